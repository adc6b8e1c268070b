"""
lorabooth — models/webhook.py
─────────────────────────────────────────────────────────────────
Provider callback payloads as explicit variants.

Replicate reports `output` in three shapes:
    "https://..."                    → TextOutput
    {"lora_url": "https://..."}      → NestedOutput   (training only)
    ["https://...", ...]             → ListOutput

parse_output() picks exactly one variant or raises MalformedCallback;
output_ref() turns any variant into the single URL we store.
─────────────────────────────────────────────────────────────────
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union

from lorabooth.core.errors import MalformedCallback


# Keys a trainer may use for the weights URL, in lookup order
NESTED_OUTPUT_KEYS = ("lora_url", "weights")


# ─────────────────────────────────────────────
# Status
# ─────────────────────────────────────────────
class ProviderStatus(str, Enum):
    STARTING   = "starting"
    PROCESSING = "processing"
    SUCCEEDED  = "succeeded"
    FAILED     = "failed"
    CANCELED   = "canceled"

    @classmethod
    def parse(cls, value: Any) -> Optional["ProviderStatus"]:
        """None for anything we don't recognise."""
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def is_intermediate(self) -> bool:
        return self in (ProviderStatus.STARTING, ProviderStatus.PROCESSING)

    @property
    def is_failure(self) -> bool:
        return self in (ProviderStatus.FAILED, ProviderStatus.CANCELED)


# ─────────────────────────────────────────────
# Output variants
# ─────────────────────────────────────────────
@dataclass(frozen=True)
class TextOutput:
    url: str


@dataclass(frozen=True)
class NestedOutput:
    key: str
    url: str


@dataclass(frozen=True)
class ListOutput:
    urls: Tuple[str, ...]


ProviderOutput = Union[TextOutput, NestedOutput, ListOutput]


def _is_url(value: Any) -> bool:
    return isinstance(value, str) and value.strip() != ""


def parse_output(raw: Any, allow_nested: bool = True) -> ProviderOutput:
    """
    Classify a provider `output` field.
    Image callbacks pass allow_nested=False (no object shape there).
    """
    if _is_url(raw):
        return TextOutput(url=raw.strip())

    if isinstance(raw, dict) and allow_nested:
        for key in NESTED_OUTPUT_KEYS:
            if _is_url(raw.get(key)):
                return NestedOutput(key=key, url=raw[key].strip())

    if isinstance(raw, (list, tuple)) and raw and _is_url(raw[0]):
        return ListOutput(urls=tuple(str(u).strip() for u in raw if _is_url(u)))

    raise MalformedCallback(f"Unrecognised output shape: {type(raw).__name__}")


def output_ref(output: ProviderOutput) -> str:
    """Normalize every variant to one URL."""
    if isinstance(output, TextOutput):
        return output.url
    if isinstance(output, NestedOutput):
        return output.url
    if isinstance(output, ListOutput):
        return output.urls[0]
    raise TypeError(f"Not a provider output variant: {output!r}")


# ─────────────────────────────────────────────
# Callback envelope
# ─────────────────────────────────────────────
@dataclass
class ProviderCallback:
    request_id: str
    status:     Optional[ProviderStatus]
    raw_status: Any
    output:     Any
    error:      Any


def parse_callback(payload: Any) -> ProviderCallback:
    """
    Extract the correlation id and status from a webhook body.
    Raises MalformedCallback when there is no usable id.
    """
    if not isinstance(payload, dict):
        raise MalformedCallback("Webhook body is not a JSON object")

    request_id = payload.get("id") or payload.get("request_id")
    if not isinstance(request_id, str) or not request_id.strip():
        raise MalformedCallback("Missing request ID in webhook payload")

    raw_status = payload.get("status")
    return ProviderCallback(
        request_id = request_id.strip(),
        status     = ProviderStatus.parse(raw_status),
        raw_status = raw_status,
        output     = payload.get("output"),
        error      = payload.get("error"),
    )


def describe(payload: Dict[str, Any]) -> str:
    """Short log line for a callback — never dumps the whole body."""
    return f"id={payload.get('id') or payload.get('request_id')} status={payload.get('status')}"
