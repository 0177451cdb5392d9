from typing import Any, ClassVar, TypeVar

from pydantic import BaseModel, ConfigDict

M = TypeVar("M", bound="StoredModel")


class StoredModel(BaseModel):
    """Pydantic model persisted as one document in `collection`."""

    model_config = ConfigDict(extra="ignore")

    collection: ClassVar[str]

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def from_doc(cls: type[M], doc: dict[str, Any]) -> M:
        return cls.model_validate(doc)
