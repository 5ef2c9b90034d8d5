from __future__ import annotations

from pydantic import BaseModel, Field

from .models import CreateProxyOptions


class CreateProxyRequest(BaseModel):
    country: str | None = Field(None, description="Desired exit country (hint only, e.g. US)")
    city: str | None = Field(None, description="Desired exit city (hint only)")
    notes: str | None = Field(None, max_length=500)
    port: int | None = Field(None, ge=1, le=65535, description="Pre-allocated host port")

    def to_options(self) -> CreateProxyOptions:
        return CreateProxyOptions(country=self.country, city=self.city, notes=self.notes, port=self.port)


class CreateBatchRequest(BaseModel):
    count: int = Field(1, ge=1, le=1000)
    country: str | None = None
    city: str | None = None
    notes: str | None = Field(None, max_length=500)

    def to_options(self) -> CreateProxyOptions:
        return CreateProxyOptions(country=self.country, city=self.city, notes=self.notes)
