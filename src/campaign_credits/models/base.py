from __future__ import annotations

import types
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, Generic, Mapping, NamedTuple, Optional, Tuple, TypeVar, Union

from pydantic import BaseModel, Field
from pydantic_core import PydanticUndefined


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IndexSpec(NamedTuple):
    fields: Tuple[str, ...]
    unique: bool = False

    def name_for(self, collection: str) -> str:
        suffix = "key" if self.unique else "idx"
        return f"{collection}_{'_'.join(self.fields)}_{suffix}"


class CheckSpec(NamedTuple):
    """
    Storage-level invariant `field <op> sum(operands)`.

    Fields and operands are field names or dotted paths into nested documents
    (e.g. "pool.credits_used"); operands may also be integer literals.
    """

    name: str
    field: str
    op: str
    operands: Tuple[Union[str, int], ...]


class DBSerializableModel(BaseModel):
    """
    Base Pydantic model that knows how to:
    - Serialize itself for DB persistence
    - Provide a backend-agnostic DB schema description derived from fields

    The actual SQL/NoSQL DDL is produced offline by the schema generator
    using this description; this class is not meant to hit the database
    at runtime for schema work.
    """

    # Logical collection / table name; subclasses should override
    collection_name: ClassVar[str]

    # Optional explicit primary key field; defaults to "id" if present
    primary_key: ClassVar[Optional[str]] = "id"

    # Secondary indexes and invariants enforced by the store itself
    indexes: ClassVar[Tuple[IndexSpec, ...]] = ()
    checks: ClassVar[Tuple[CheckSpec, ...]] = ()

    def serialize_for_db(self) -> Dict[str, Any]:
        """
        Convert to a dict suitable for DB persistence.

        Enums are stored by value and nested models as sub-documents;
        DB adapters can still post-process this if needed.
        """
        return self.model_dump(by_alias=True, exclude_none=True, mode="python")

    @classmethod
    def db_schema(cls) -> Dict[str, Any]:
        """
        Return a backend-agnostic schema description derived from model fields.

        The schema generator runs this once (e.g. from a CLI) to produce:
        - SQL DDL for relational databases
        - JSON/metadata for NoSQL collections and indexes
        """
        fields: Mapping[str, Any] = cls.model_fields

        properties: Dict[str, Any] = {}
        required: list[str] = []

        for name, field in fields.items():
            annotation, nullable = cls._unwrap_optional(field.annotation)
            default = None if field.default is PydanticUndefined else field.default
            if isinstance(default, Enum):
                default = default.value
            elif isinstance(default, BaseModel):
                default = None

            properties[name] = {
                "type": cls._map_type(annotation),
                "nullable": nullable,
                "default": default,
                "description": field.description,
            }
            if isinstance(annotation, type) and issubclass(annotation, Enum):
                properties[name]["enum"] = [member.value for member in annotation]

            if field.is_required():
                required.append(name)

        return {
            "collection_name": cls.collection_name,
            "primary_key": cls.primary_key,
            "properties": properties,
            "required": required,
            "indexes": [
                {
                    "name": index.name_for(cls.collection_name),
                    "fields": list(index.fields),
                    "unique": index.unique,
                }
                for index in cls.indexes
            ],
            "checks": [
                {**check._asdict(), "operands": list(check.operands)} for check in cls.checks
            ],
        }

    @staticmethod
    def _unwrap_optional(annotation: Any) -> tuple[Any, bool]:
        origin = getattr(annotation, "__origin__", None)
        if origin is Union or isinstance(annotation, types.UnionType):
            args = [a for a in annotation.__args__ if a is not type(None)]
            nullable = len(args) != len(annotation.__args__)
            if len(args) == 1:
                return args[0], nullable
            return annotation, nullable
        return annotation, False

    @staticmethod
    def _map_type(annotation: Any) -> str:
        """
        Map a Python / Pydantic type annotation to a generic logical type.
        The schema generator will translate these to dialect-specific types.
        """
        origin: Any = getattr(annotation, "__origin__", None)
        if origin is list or origin is tuple or origin is set:
            return "array"
        if origin is dict:
            return "object"

        if isinstance(annotation, type):
            if issubclass(annotation, bool):
                return "boolean"
            if issubclass(annotation, Enum):
                return "string"
            if issubclass(annotation, BaseModel):
                return "object"
        if annotation in (int,):
            return "integer"
        if annotation in (float,):
            return "number"
        if annotation in (str,):
            return "string"

        # Fallback for datetime, UUID, etc.; generator can refine using metadata
        name = getattr(annotation, "__name__", "object")
        return name.lower()


TItem = TypeVar("TItem")


class PaginatedResult(BaseModel, Generic[TItem]):
    items: list[TItem] = Field(default_factory=list)
    total: int
    limit: int
    offset: int
