"""Request bodies and camelCase rendering shared by the routers."""

from dataclasses import asdict, is_dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def camelize(value: Any) -> dict[str, Any]:
    data = asdict(value) if is_dataclass(value) else dict(value)
    return {to_camel(k): v for k, v in data.items()}


class PromptPayload(CamelModel):
    prompt: str | None = None
    plan: str | None = None
    svg_code: str | None = None
    critique: str | None = None
    image_base64: str | None = None
    iteration: int | None = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class EstimateRequest(CamelModel):
    action: str
    prompt_payload: PromptPayload = Field(default_factory=PromptPayload)


class GenerateRequest(EstimateRequest):
    session_id: str


class VerifyPurchaseRequest(CamelModel):
    purchase_token: str = Field(..., min_length=1)
    product_id: str = Field(..., min_length=1)
