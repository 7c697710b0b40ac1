from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


HandlerType = Literal["request", "response", "middleware"]
Region = Literal["all", "us-east", "us-west", "eu-central", "ap-south"]


class CreateHandlerRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    pattern: str = Field("/*", min_length=1, max_length=2000)
    code: str = Field(..., min_length=1)
    type: HandlerType = "request"
    regions: list[Region] = Field(default_factory=lambda: ["all"], min_length=1)


class UpdateHandlerRequest(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=200)
    pattern: str | None = Field(None, min_length=1, max_length=2000)
    code: str | None = Field(None, min_length=1)
    type: HandlerType | None = None
    regions: list[Region] | None = Field(None, min_length=1)


class SandboxRequestBody(BaseModel):
    url: str = Field("/", min_length=1, max_length=2000)
    method: str = Field("GET", min_length=1, max_length=16)
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None
