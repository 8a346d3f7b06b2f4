from typing import Literal, Optional

from fastapi_users import schemas
from pydantic import BaseModel, ConfigDict, Field


# =========================
# USER SCHEMAS
# =========================
class UserRead(schemas.BaseUser[int]):
    username: Optional[str] = None


class UserCreate(schemas.BaseUserCreate):
    username: Optional[str] = None


class UserUpdate(schemas.BaseUserUpdate):
    username: Optional[str] = None


# =========================
# THREAD SCHEMAS
# =========================
class ThreadCreate(BaseModel):
    title: Optional[str] = Field(default=None, max_length=200)


class MessageRequest(BaseModel):
    """Inbound chat turn. ``currentHTML`` / ``enhanceWidgetId`` turn it into an enhance."""
    model_config = ConfigDict(populate_by_name=True)

    content: str = Field(min_length=1)
    model: Optional[str] = None
    provider: Optional[str] = None
    mode: Optional[Literal["preview", "standard"]] = None
    current_html: Optional[str] = Field(default=None, alias="currentHTML")
    enhance_widget_id: Optional[str] = Field(default=None, alias="enhanceWidgetId")

    @property
    def is_enhance(self) -> bool:
        return bool(self.current_html or self.enhance_widget_id)


# =========================
# SECTION SCHEMAS
# =========================
class SectionEditRequest(BaseModel):
    content: str = Field(min_length=1)  # the edit instruction
    model: Optional[str] = None
    provider: Optional[str] = None
    mode: Optional[Literal["preview", "standard"]] = None


class SectionAddRequest(BaseModel):
    content: str = Field(min_length=1)
    position: Optional[int] = Field(default=None, ge=0)
    type: Optional[Literal["metric", "chart", "table", "text", "insight", "custom"]] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    mode: Optional[Literal["preview", "standard"]] = None


class SectionPatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    html_content: str = Field(alias="htmlContent", min_length=1)
    title: Optional[str] = Field(default=None, max_length=300)
    prompt: Optional[str] = None


class MoveRequest(BaseModel):
    direction: Literal["up", "down"]


class RestoreRequest(BaseModel):
    version: int = Field(ge=1)


class SuggestionsRequest(BaseModel):
    model: Optional[str] = None
    provider: Optional[str] = None
    count: int = Field(default=5, ge=1, le=10)
