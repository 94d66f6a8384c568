# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for crater."""

from __future__ import annotations

from typing import ClassVar

from pydantic import BaseModel, ConfigDict


class CraterBaseModel(BaseModel):
    """Base model with shared config for crater schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class FrozenModel(BaseModel):
    """Base model for identities: immutable and hashable."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="forbid",
        frozen=True,
    )
