"""Pydantic models describing registered actions."""

from __future__ import annotations

from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..models import ACTION_TYPE_PATTERN


class ParamDescriptor(BaseModel):
    """Describes a single input or output parameter of an action."""

    name: str
    type_ref: str = Field("any", description="JSON type of the parameter")
    required: bool = True
    description: Optional[str] = None
    default_json: Optional[Any] = None


class ActionDescriptor(BaseModel):
    """Metadata describing an action handler in the registry."""

    id: str = Field(pattern=ACTION_TYPE_PATTERN)
    name: str
    description: Optional[str] = None
    inputs: List[ParamDescriptor] = Field(default_factory=list)
    outputs: List[ParamDescriptor] = Field(default_factory=list)
    side_effects: List[str] = Field(default_factory=list)
    requires_connection: Optional[str] = None

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, v: str) -> str:
        if not v:
            raise ValueError("name must be a non-empty string")
        return v

    @property
    def category(self) -> str:
        return self.id.split(".", 1)[0]


def param(
    name: str,
    type_ref: str = "any",
    required: bool = True,
    description: Optional[str] = None,
    default: Any = None,
) -> ParamDescriptor:
    """Shorthand used by the built-in catalogue."""
    return ParamDescriptor(
        name=name,
        type_ref=type_ref,
        required=required,
        description=description,
        default_json=default,
    )
