from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class InboundMessageRequest(BaseModel):
    # Required fields are checked by the inbound gateway so a missing one answers 400, not 422.
    bot_name: str | None = Field(None, max_length=200)
    chat_id: str | int | None = None
    text: str | None = Field(None, max_length=4000)
    source: str | None = Field(None, max_length=100)
    idempotency_key: str | None = Field(None, max_length=200)


class CustomPortScanRequest(BaseModel):
    port: int = Field(..., ge=1, le=65535)


class PatchPortRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    monitor_enabled: bool = Field(..., alias="monitorEnabled")
