from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


ANON_USER = "anon"
DEFAULT_PRODUCT = "t-shirt"
DEFAULT_STYLE = "classic vintage"
DEFAULT_CANVAS_W = 4500
DEFAULT_CANVAS_H = 5400

PlacementType = Literal["text", "image", "shape"]


class Canvas(BaseModel):
    w: float = Field(DEFAULT_CANVAS_W, ge=0)
    h: float = Field(DEFAULT_CANVAS_H, ge=0)


class DesignOptions(BaseModel):
    product: Optional[str] = Field(default=None, description="Garment category, e.g. t-shirt or hoodie")
    style: Optional[str] = Field(default=None, description="Free-text style direction")
    canvas: Optional[Canvas] = None
    retrieval: bool = Field(default=False, description="Augment the prompt with retrieved facts")


class DesignRequest(BaseModel):
    brief: str = Field(..., description="Free-text description of the design concept")
    userId: Optional[str] = Field(default=None)
    options: Optional[DesignOptions] = None

    @property
    def user_id(self) -> str:
        return (self.userId or "").strip() or ANON_USER

    @property
    def product(self) -> str:
        return (self.options and self.options.product) or DEFAULT_PRODUCT

    @property
    def style(self) -> str:
        return (self.options and self.options.style) or DEFAULT_STYLE

    @property
    def canvas(self) -> Canvas:
        return (self.options and self.options.canvas) or Canvas()

    @property
    def wants_retrieval(self) -> bool:
        return bool(self.options and self.options.retrieval)


class Placement(BaseModel):
    area: str = "front"
    type: PlacementType = "text"
    x: float = 0
    y: float = 0
    width: float = 400
    height: float = 400
    content: Dict[str, Any] = Field(default_factory=dict)


class Font(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str
    size_pt: Optional[float] = None
    weight: Optional[str] = None


class Design(BaseModel):
    title: str = "Untitled"
    placements: List[Placement] = Field(default_factory=list)
    palette: List[str] = Field(default_factory=list)
    fonts: List[Font] = Field(default_factory=list)
    production_notes: str = ""


class PreviewEntry(BaseModel):
    storageKey: str
    url: str


def new_design_id() -> str:
    return str(uuid.uuid4())


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class DesignRecord(BaseModel):
    designId: str = Field(default_factory=new_design_id)
    userId: str = ANON_USER
    createdAt: str = Field(default_factory=utc_now_iso)
    promptHash: str = ""
    llmModel: str = "mock"
    design: Design
    previews: List[PreviewEntry] = Field(default_factory=list)
    previewUrl: Optional[str] = None

    def to_item(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_item(cls, item: Dict[str, Any]) -> "DesignRecord":
        return cls.model_validate(item)
