"""Result records and the error taxonomy shared by the scanner modules."""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum


class Status(str, Enum):
    """Classification of one resolved candidate."""

    AVAILABLE = "available"
    TAKEN = "taken"
    ERROR = "error"


class ScanError(Exception):
    """Base class for scanner errors."""


class TransientLookupError(ScanError):
    """A lookup failed in a way that retrying could fix (timeout, rate limit)."""


class PermanentLookupError(ScanError):
    """A lookup failed in a way that retrying will not fix."""


class PersistenceError(ScanError):
    """Writing results to disk failed; the run cannot continue safely."""


class ConfigurationError(ScanError):
    """Invalid configuration detected before the scan starts."""


class ResumeParseError(ScanError):
    """A prior result file contains a record that cannot be parsed."""


@dataclass(frozen=True)
class LookupResult:
    """Answer returned by a lookup client for a single label."""

    available: bool
    reply_code: int | None = None
    message: str = ""


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ScanResult:
    """One persisted line of the structured result file."""

    label: str
    domain: str
    status: Status
    timestamp: str
    reason: str | None = None
    reply_code: int | None = None
    message: str = ""

    @classmethod
    def from_lookup(cls, label: str, tld: str, lookup: LookupResult) -> "ScanResult":
        return cls(
            label=label,
            domain=f"{label}.{tld}",
            status=Status.AVAILABLE if lookup.available else Status.TAKEN,
            timestamp=now_iso(),
            reply_code=lookup.reply_code,
            message=lookup.message,
        )

    @classmethod
    def error(cls, label: str, tld: str, reason: str) -> "ScanResult":
        return cls(
            label=label,
            domain=f"{label}.{tld}",
            status=Status.ERROR,
            timestamp=now_iso(),
            reason=reason,
        )


def result_to_dict(r: ScanResult) -> dict:
    """Convert a ``ScanResult`` to a JSON-serializable dictionary."""

    data = asdict(r)
    data["status"] = r.status.value
    if r.reason is None:
        data.pop("reason")
    return data


def result_from_dict(data: dict) -> ScanResult:
    """Create a ``ScanResult`` from a decoded record.

    Raises:
        ResumeParseError: if required fields are missing or invalid.
    """
    try:
        label = data["label"]
        status = Status(data["status"])
    except (KeyError, TypeError, ValueError) as e:
        raise ResumeParseError(f"invalid record {data!r}: {e}") from e
    if not isinstance(label, str) or not label:
        raise ResumeParseError(f"invalid label in record {data!r}")
    return ScanResult(
        label=label,
        domain=data.get("domain", label),
        status=status,
        timestamp=data.get("timestamp", ""),
        reason=data.get("reason"),
        reply_code=data.get("reply_code"),
        message=data.get("message", ""),
    )
