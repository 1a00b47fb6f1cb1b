import hmac
import re
from dataclasses import dataclass
from enum import Enum

_BEARER_RE = re.compile(r"^\s*bearer\s+(.+?)\s*$", re.IGNORECASE)


class CredentialKind(str, Enum):
    INTERNAL = "internal"
    MIRROR_WORKER = "mirror_worker"
    ROLE_SYNC_WORKER = "role_sync_worker"


@dataclass(slots=True)
class Principal:
    kind: CredentialKind
    subject: str


class CredentialNotConfiguredError(Exception):
    """Raised when no credential is configured for the requested surface."""


class CredentialMismatchError(Exception):
    """Raised when the presented token matches none of the accepted credentials."""


def parse_bearer_token(header: str | None) -> str | None:
    if not header:
        return None
    match = _BEARER_RE.match(header)
    if not match:
        return None
    token = match.group(1).strip()
    return token or None


def verify_token(presented: str | None, accepted: list[str | None], *, not_configured_code: str) -> int:
    """Return the index in ``accepted`` of the credential that matches ``presented``."""
    candidates = [(index, value.strip()) for index, value in enumerate(accepted) if value and value.strip()]
    if not candidates:
        raise CredentialNotConfiguredError(not_configured_code)
    if not presented:
        raise CredentialMismatchError("unauthorized")
    for index, value in candidates:
        if hmac.compare_digest(presented.encode("utf-8"), value.encode("utf-8")):
            return index
    raise CredentialMismatchError("unauthorized")
