"""Shared helpers for probe suites: payload builders, money math, timing and polling."""

from __future__ import annotations

import asyncio
import functools
import html
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from invoicecheck.harness.models import ProbeResult

TWO_PLACES = Decimal("0.01")
ACTIVE_MARKUP = ("<script", "onerror=", "javascript:", "<img", "<iframe")


def unique_suffix() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:6]}"


def round_money(value: Any) -> float:
    """Round half-up to two decimals, working in decimal to avoid binary float drift."""
    try:
        return float(Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"Not a monetary amount: {value!r}") from exc


def compute_totals(items: Iterable[Dict[str, Any]], vat_rate: float = 0) -> Dict[str, float]:
    subtotal = sum(
        (Decimal(str(item["quantity"])) * Decimal(str(item["unitPrice"])) for item in items),
        Decimal("0"),
    )
    vat_amount = subtotal * Decimal(str(vat_rate)) / Decimal("100")
    return {
        "subtotal": round_money(subtotal),
        "vatAmount": round_money(vat_amount),
        "total": round_money(subtotal + vat_amount),
    }


def money_close(actual: Any, expected: float, tolerance: float = 0.01) -> bool:
    try:
        return abs(float(actual) - expected) < tolerance + 1e-9
    except (TypeError, ValueError):
        return False


def iso_days_from_now(days: int) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def mock_items(count: int = 1, unit_price: float = 100, description: str = "Test Service") -> List[Dict[str, Any]]:
    return [
        {
            "description": f"{description} {index + 1}" if count > 1 else description,
            "quantity": 1,
            "unitPrice": unit_price,
            "total": round_money(unit_price),
        }
        for index in range(count)
    ]


def mock_invoice(
    client_id: str = "test-client-1",
    *,
    prefix: str = "INV",
    items: Optional[List[Dict[str, Any]]] = None,
    vat_rate: float = 18,
    **overrides: Any,
) -> Dict[str, Any]:
    items = items if items is not None else mock_items()
    payload: Dict[str, Any] = {
        "clientId": client_id,
        "invoiceNumber": f"{prefix}-{unique_suffix()}",
        "issueDate": iso_days_from_now(0),
        "dueDate": iso_days_from_now(7),
        "items": items,
        "vatRate": vat_rate,
    }
    payload.update(compute_totals(items, vat_rate))
    payload.update(overrides)
    return payload


def mock_client(prefix: str = "Test Client", **overrides: Any) -> Dict[str, Any]:
    suffix = unique_suffix()
    payload: Dict[str, Any] = {
        "name": f"{prefix} {suffix}",
        "email": f"{prefix.lower().replace(' ', '-')}-{suffix}@example.com",
        "phone": "+995555123456",
        "address": "Test Address, Tbilisi, Georgia",
    }
    payload.update(overrides)
    return payload


def extract_records(payload: Any, key: str) -> List[Dict[str, Any]]:
    """List endpoints answer either a bare array or ``{key: [...]}``."""
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for candidate in (key, "data", "items", "results"):
            value = payload.get(candidate)
            if isinstance(value, list):
                return [item for item in value if isinstance(item, dict)]
    return []


def find_record(payload: Any, key: str, record_id: Any) -> Optional[Dict[str, Any]]:
    for record in extract_records(payload, key):
        if record.get("id") == record_id:
            return record
    return None


def average(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def ratio(part: int, whole: int) -> float:
    return part / whole * 100 if whole else 0.0


def is_rejection(response: httpx.Response) -> bool:
    """A deliberate refusal: 4xx. A 5xx is a fault even when rejection was the goal."""
    return 400 <= response.status_code < 500


def stored_inertly(sent: str, returned: Any, content_type: str) -> bool:
    """Hostile text echoed back as JSON data, verbatim or HTML-escaped, is inert."""
    if "json" not in content_type:
        return False
    return returned == sent or returned == html.escape(sent)


def neutralized(sent: str, returned: Any) -> bool:
    """The server rewrote the payload and no active markup survived."""
    if not isinstance(returned, str) or returned == sent:
        return False
    lowered = returned.lower()
    return not any(marker in lowered for marker in ACTIVE_MARKUP)


def error_result(label: str, exc: BaseException) -> ProbeResult:
    return ProbeResult(success=False, message=f"{label} failed: {exc}", error=exc)


def probe(label: str) -> Callable[[Callable[..., Awaitable[ProbeResult]]], Callable[..., Awaitable[ProbeResult]]]:
    """Time a probe body and convert unexpected exceptions into a failing result.

    Cancellation is re-raised so the runner's timeout can abandon the probe.
    """

    def decorator(func: Callable[..., Awaitable[ProbeResult]]) -> Callable[..., Awaitable[ProbeResult]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> ProbeResult:
            start = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as exc:  # noqa: BLE001 - reported as a failing probe
                result = error_result(label, exc)
            return result.with_duration(int(round((time.perf_counter() - start) * 1000)))

        return wrapper

    return decorator


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    window_ms: int,
    interval_ms: int,
) -> bool:
    """Re-run ``check`` until it passes or the polling window closes."""
    deadline = time.perf_counter() + window_ms / 1000
    while True:
        if await check():
            return True
        if time.perf_counter() >= deadline:
            return False
        await asyncio.sleep(interval_ms / 1000)


@dataclass
class ScratchStore:
    """Disposable key/value area standing in for browser ``localStorage``.

    Values are stored JSON-encoded so a round trip exercises serialization, and a
    probe is expected to remove every key it writes before returning.
    """

    def __post_init__(self) -> None:
        self._items: Dict[str, str] = {}

    def set_item(self, key: str, value: Any) -> None:
        self._items[key] = json.dumps(value, ensure_ascii=False, sort_keys=True)

    def get_item(self, key: str) -> Any:
        raw = self._items.get(key)
        return json.loads(raw) if raw is not None else None

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
