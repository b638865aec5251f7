# Copyright (c) Syntropy Systems
"""Classifier protocol, output coercion and loading by import path."""

from __future__ import annotations

import importlib
import json
import re
from collections.abc import Mapping
from typing import TYPE_CHECKING, Optional, Protocol, Union

from pydantic import ValidationError

from casewise.errors import ConfigError, TransientClassifierError
from casewise.models.outcome import ClassifierOutcome

if TYPE_CHECKING:
    from casewise.models.config import ClassifierSpec

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
_SPECIAL_TOKEN_RE = re.compile(r"<\|[^|]+\|>")
_DIGIT_WORDS = {
    word: str(digit)
    for digit, word in enumerate(["zero", "one", "two", "three", "four", "five", "six", "seven", "eight", "nine"])
}
_SPELLED_DECIMAL_RE = re.compile(r"\b0\.\s*(" + "|".join(_DIGIT_WORDS) + r")\b", re.IGNORECASE)

_TRUE_WORDS = frozenset({"true", "yes", "y", "1", "detected", "positive"})
_FALSE_WORDS = frozenset({"false", "no", "n", "0", "not detected", "negative"})
_UNKNOWN_WORDS = frozenset({"", "unknown", "unsure", "null", "none", "na", "n/a"})

RawOutcome = Union[ClassifierOutcome, Mapping[str, object], str]


class Classifier(Protocol):
    """Anything that can classify one text for one category."""

    def classify(self, text: str, category: str) -> RawOutcome:
        ...


def repair_output(text: str) -> str:
    """Undo the formatting slips models make: special tokens and spelled decimals."""
    text = _SPECIAL_TOKEN_RE.sub("", text)
    return _SPELLED_DECIMAL_RE.sub(lambda m: "0." + _DIGIT_WORDS[m.group(1).lower()], text)


def parse_json_output(text: str) -> dict[str, object]:
    """
    Extract the JSON object from a model reply.

    Accepts replies wrapped in code fences or surrounded by prose; the first
    balanced {...} block is parsed. Output is passed through repair_output
    first.
    """
    content = _FENCE_RE.sub("", repair_output(text).strip())
    if not content:
        msg = "Classifier output is empty"
        raise TransientClassifierError(msg, stage="parse")

    start = content.find("{")
    if start == -1:
        msg = "Classifier output contains no JSON object"
        raise TransientClassifierError(msg, stage="parse")

    decoder = json.JSONDecoder()
    first_error: Optional[json.JSONDecodeError] = None
    while start != -1:
        try:
            parsed, _ = decoder.raw_decode(content, start)
        except json.JSONDecodeError as e:
            first_error = first_error or e
        else:
            return parsed
        start = content.find("{", start + 1)

    msg = f"Failed to parse classifier output as JSON: {first_error.msg}"
    raise TransientClassifierError(msg, stage="parse") from first_error


def parse_detected(value: object) -> Optional[bool]:
    """Map the many spellings of a yes/no/unknown answer onto a tri-state."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value in (0, 1):
            return bool(value)
        msg = f"Cannot interpret detected={value!r}"
        raise TransientClassifierError(msg, stage="parse")
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
        if word in _UNKNOWN_WORDS:
            return None
    msg = f"Cannot interpret detected={value!r}"
    raise TransientClassifierError(msg, stage="parse")


def coerce_outcome(value: RawOutcome) -> ClassifierOutcome:
    """
    Normalise whatever the classifier returned into a ClassifierOutcome.

    Raw strings are parsed as JSON and kept as raw_output. Malformed
    output raises TransientClassifierError so the call can be retried.
    """
    if isinstance(value, ClassifierOutcome):
        return value

    raw_output: Optional[str] = None
    if isinstance(value, str):
        raw_output = value
        data: Mapping[str, object] = parse_json_output(value)
    elif isinstance(value, Mapping):
        data = value
    else:
        msg = f"Classifier returned unsupported type {type(value).__name__}"
        raise TransientClassifierError(msg, stage="parse")

    fields = dict(data)
    fields["detected"] = parse_detected(fields.get("detected"))
    if raw_output is not None:
        fields["raw_output"] = raw_output
    elif fields.get("raw_output") is None:
        fields["raw_output"] = json.dumps(dict(data), default=str, sort_keys=True)

    try:
        return ClassifierOutcome.model_validate(fields)
    except ValidationError as e:
        msg = f"Malformed classifier output: {e.errors()[0]['msg']}"
        raise TransientClassifierError(msg, stage="parse") from e


def load_classifier(spec: ClassifierSpec) -> Classifier:
    """
    Import and build the classifier named by `spec.target` ('module:attribute').

    Classes, and callables without a `classify` method, are treated as
    factories and called with `spec.options`.
    """
    module_name, _, attr_path = spec.target.partition(":")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        msg = f"Cannot import classifier module '{module_name}': {e}"
        raise ConfigError(msg, stage="config") from e

    target: object = module
    for attr in attr_path.split("."):
        try:
            target = getattr(target, attr)
        except AttributeError as e:
            msg = f"Module '{module_name}' has no attribute '{attr_path}'"
            raise ConfigError(msg, stage="config") from e

    if isinstance(target, type) or (callable(target) and not hasattr(target, "classify")):
        target = target(**spec.options)
    elif spec.options:
        msg = f"Classifier '{spec.target}' is not a factory; options cannot be applied"
        raise ConfigError(msg, stage="config")

    if not callable(getattr(target, "classify", None)):
        msg = f"Classifier '{spec.target}' has no classify(text, category) method"
        raise ConfigError(msg, stage="config")

    return target  # type: ignore[return-value]
