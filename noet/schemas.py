from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class AttachmentOut(BaseModel):
    filename: str
    originalName: str
    size: int
    type: str
    uploaded: str


class NoteSummary(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    title: str | None = None
    created: str | None = None
    updated: str | None = None
    tags: list[Any] = Field(default_factory=list)
    notebook: str | None = None
    folder: str | None = None
    starred: bool = False
    archived: bool = False
    deleted: bool = False
    deletedAt: str | None = None
    version: int = 1
    attachments: list[dict[str, Any]] = Field(default_factory=list)


class NoteOut(NoteSummary):
    content: str = ""
    html: str = ""


class NoteCreate(BaseModel):
    title: str = "Untitled Note"
    content: str | None = None
    markdown: str | None = None
    tags: list[Any] = Field(default_factory=list)
    notebook: str | None = None
    folder: str | None = None
    starred: bool = False
    archived: bool = False


class NoteSearchPage(BaseModel):
    notes: list[NoteSummary]
    total: int
    offset: int
    limit: int


class EntityOut(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str | None = None
    color: str | None = None
    sortOrder: int | float | None = None
    noteCount: int = 0


class ReorderRequest(BaseModel):
    sourceId: str
    targetId: str
    position: Literal["before", "after"] = "after"


class MoveRequest(BaseModel):
    parentId: str | None = None


class StoragePathRequest(BaseModel):
    path: str | None = None


class AttachmentUploadOut(BaseModel):
    attachment: AttachmentOut
    relativePath: str


class VersionSummary(BaseModel):
    id: str
    version: int
    createdAt: str
    trigger: str
    changeDescription: str
    size: int


class SuccessOut(BaseModel):
    success: bool = True
    message: str | None = None
