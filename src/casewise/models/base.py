# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for casewise."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict, JsonValue
from typing_extensions import TypeAlias

JSONValue: TypeAlias = JsonValue


class FrozenModel(BaseModel):
    """Immutable value; derive changed copies with model_copy(update=...)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )


class StrictModel(BaseModel):
    """Base model that rejects unknown fields (configuration documents)."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        populate_by_name=True,
    )
