import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from allocation import BillTotal, ShareRequest
from bill_extraction import BillExtractionError, VisionServiceError, extract_bill
from ledger_client import LedgerClient
from posting import AllocationOutcome, ItemStatus, PostingError, PostingMode, post
from settings import APP_NAME, APP_VERSION, ConfigurationError, Settings, load_settings

logging.basicConfig(
    level=load_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ExpenseShare(BaseModel):
    name: str = Field(min_length=1)
    amount: float = Field(ge=0)


class PostExpensesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bill_amount: float = Field(alias="billAmount", ge=0)
    bill_description: str = Field(alias="billDescription", min_length=1)
    expenses: List[ExpenseShare] = Field(default_factory=list)
    group_id: Optional[int] = Field(default=None, alias="groupId")

    def bill_total(self) -> BillTotal:
        return BillTotal(amount=self.bill_amount, description=self.bill_description.strip())

    def share_requests(self) -> List[ShareRequest]:
        return [ShareRequest(name=e.name, amount=e.amount) for e in self.expenses]


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "Invalid request"
    return error_response(400, message)


@app.exception_handler(PostingError)
async def posting_error_handler(request: Request, exc: PostingError):
    logger.error("Ledger posting failed: %s", exc.message)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("Invalid configuration: %s", exc)
    return error_response(500, str(exc))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(500, "Internal Server Error")


def get_settings() -> Settings:
    return load_settings()


def get_ledger(request: Request, settings: Settings = Depends(get_settings)) -> LedgerClient:
    token = settings.ledger_api_key
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer ") and auth[7:].strip():
        token = auth[7:].strip()
    if not token:
        raise HTTPException(status_code=500, detail="Missing server configuration")
    return LedgerClient(token, settings.ledger_api_url, timeout=settings.ledger_timeout_sec)


def outcome_body(outcome: AllocationOutcome) -> Dict[str, Any]:
    return {
        "success": True,
        "message": outcome.summary_message(),
        "notFound": outcome.unresolved,
        "posted": outcome.posted,
    }


@app.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "status": "ok",
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "ledger_configured": bool(settings.ledger_api_key),
        "vision_configured": bool(settings.openai_api_key),
    }


@app.get("/version")
def version(settings: Settings = Depends(get_settings)):
    return {
        "app": APP_NAME,
        "version": APP_VERSION,
        "vision_model": settings.vision_model,
    }


@app.post("/scan-bill")
def scan_bill(file: Optional[UploadFile] = File(None), settings: Settings = Depends(get_settings)):
    if file is None:
        raise HTTPException(status_code=400, detail="No file uploaded")
    if not settings.openai_api_key:
        raise HTTPException(status_code=500, detail="Missing server configuration")

    image_data = file.file.read()
    if not image_data:
        raise HTTPException(status_code=400, detail="No file uploaded")
    mime_type = file.content_type if (file.content_type or "").startswith("image/") else "image/jpeg"
    try:
        bill = extract_bill(
            image_data,
            settings.openai_api_key,
            model=settings.vision_model,
            max_tokens=settings.vision_max_tokens,
            timeout=settings.vision_timeout_sec,
            mime_type=mime_type,
        )
    except (BillExtractionError, VisionServiceError) as ex:
        logger.error("Error processing image: %s", ex)
        return error_response(500, str(ex))
    return {"success": True, "billData": bill}


@app.post("/expenses/group")
def add_group_expense(
    req: PostExpensesRequest,
    settings: Settings = Depends(get_settings),
    ledger: LedgerClient = Depends(get_ledger),
):
    group_id = req.group_id if req.group_id is not None else settings.ledger_group_id
    outcome = post(
        PostingMode.GROUP,
        ledger,
        req.bill_total(),
        req.share_requests(),
        group_id=group_id,
        currency_code=settings.currency_code,
        share_check=settings.share_total_check,
    )
    body = outcome_body(outcome)
    body["expenseDetails"] = outcome.expense
    return body


@app.post("/expenses/friends")
def add_friend_expenses(req: PostExpensesRequest, ledger: LedgerClient = Depends(get_ledger)):
    outcome = post(PostingMode.FRIENDS, ledger, req.bill_total(), req.share_requests())
    body = outcome_body(outcome)
    body["added"] = [
        {"name": r.name, "amount": float(r.amount), "expenseId": r.transaction_ref}
        for r in outcome.results_with(ItemStatus.POSTED)
    ]
    body["errors"] = outcome.errors
    return body
