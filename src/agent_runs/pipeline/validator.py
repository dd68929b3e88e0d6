"""Deterministic validation of raw model output."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(slots=True)
class ValidationResult:
    """Result of validating one raw model output."""

    parsed: Any
    parse_ok: bool
    is_valid: bool
    confidence: float | None = None
    items_produced: int = 0
    reason_codes: tuple[str, ...] = ()
    error_summary: str | None = None
    items: list[Any] = field(default_factory=list)


class OutputValidator(Protocol):
    """Protocol implemented by per-agent output validators."""

    def validate(self, raw_output: str) -> ValidationResult:
        """Parse and validate one raw model output."""


class JsonItemsValidator:
    """Validate a JSON object carrying an item list and optional confidence.

    Expected shape::

        {"items": [{...}, ...], "confidence": 0.93, "no_change_codes": ["ALREADY_EXTRACTED"]}
    """

    def __init__(
        self,
        *,
        items_key: str = "items",
        required_item_keys: tuple[str, ...] = (),
    ) -> None:
        self.items_key = items_key
        self.required_item_keys = required_item_keys

    def validate(self, raw_output: str) -> ValidationResult:  # noqa: PLR0911
        try:
            parsed = json.loads(raw_output)
        except (ValueError, RecursionError) as error:
            return ValidationResult(
                parsed=None,
                parse_ok=False,
                is_valid=False,
                error_summary=f"Output is not valid JSON: {error}",
            )
        if not isinstance(parsed, dict):
            return ValidationResult(
                parsed=parsed,
                parse_ok=True,
                is_valid=False,
                error_summary="Output must be a JSON object.",
            )

        reason_codes = _reason_codes(parsed.get("no_change_codes"))
        confidence = parsed.get("confidence")
        if confidence is not None:
            if isinstance(confidence, bool) or not isinstance(confidence, int | float):
                return _invalid(parsed, reason_codes, "confidence must be a number.")
            try:
                confidence = float(confidence)
            except OverflowError:
                return _invalid(parsed, reason_codes, "confidence must be a finite number.")
            if not math.isfinite(confidence):
                return _invalid(parsed, reason_codes, "confidence must be a finite number.")
            if not 0.0 <= confidence <= 1.0:
                return _invalid(parsed, reason_codes, "confidence must be within [0, 1].")

        items = parsed.get(self.items_key)
        if not isinstance(items, list):
            return _invalid(
                parsed,
                reason_codes,
                f"Output must contain a '{self.items_key}' list.",
                confidence=confidence,
            )
        for index, item in enumerate(items):
            if not isinstance(item, dict):
                return _invalid(
                    parsed,
                    reason_codes,
                    f"{self.items_key}[{index}] must be an object.",
                    confidence=confidence,
                )
            missing = [key for key in self.required_item_keys if key not in item]
            if missing:
                return _invalid(
                    parsed,
                    reason_codes,
                    f"{self.items_key}[{index}] is missing keys: {', '.join(missing)}",
                    confidence=confidence,
                )

        return ValidationResult(
            parsed=parsed,
            parse_ok=True,
            is_valid=True,
            confidence=confidence,
            items_produced=len(items),
            reason_codes=reason_codes,
            items=items,
        )


def _invalid(
    parsed: Any,
    reason_codes: tuple[str, ...],
    summary: str,
    *,
    confidence: float | None = None,
) -> ValidationResult:
    return ValidationResult(
        parsed=parsed,
        parse_ok=True,
        is_valid=False,
        confidence=confidence,
        reason_codes=reason_codes,
        error_summary=summary,
    )


def _reason_codes(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list):
        return tuple(str(code) for code in value if isinstance(code, str))
    return ()
