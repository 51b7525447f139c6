import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    id: Any
    first_name: str = ""
    last_name: str = ""

    @classmethod
    def from_ledger(cls, raw: Mapping[str, Any]) -> "Identity":
        return cls(
            id=raw["id"],
            first_name=raw.get("first_name") or "",
            last_name=raw.get("last_name") or "",
        )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def normalize_name(name: str) -> str:
    """Lookup key for a human-entered name: trimmed and lowercased, nothing more."""
    return (name or "").strip().lower()


def name_keys(identity: Identity) -> Tuple[str, str]:
    return normalize_name(identity.first_name), normalize_name(identity.full_name)


def build_roster(identities: Iterable[Identity]) -> Dict[str, Identity]:
    """
    Index identities by first name and by full name.

    Keys are not unique across a roster: when two identities share a key the
    one that comes later wins. Callers that need to disambiguate two people
    with the same first name have to pass the full name.
    """
    roster: Dict[str, Identity] = {}
    for identity in identities:
        for key in name_keys(identity):
            if not key:
                continue
            previous = roster.get(key)
            if previous is not None and previous.id != identity.id:
                logger.debug("Roster key %r moved from id=%s to id=%s", key, previous.id, identity.id)
            roster[key] = identity
    return roster


def resolve(name: str, roster: Mapping[str, Identity]) -> Optional[Identity]:
    key = normalize_name(name)
    identity = roster.get(key) if key else None
    logger.debug("Looking up %r -> %s", key, identity.id if identity else None)
    return identity
