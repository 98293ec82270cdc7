"""
Storage layout of the credit ledger, rendered from the stored models.

`--backend sql` prints DDL with one table per stored model. Nested documents
(campaign pool and pacing, notification payloads) become JSON columns, and
the credit invariants become CHECK constraints next to the unique and lookup
indexes. `--backend nosql` prints, per MongoDB collection, the validator
(`$jsonSchema` plus the same invariants as `$expr`) and the indexes that
`MongoDBManager.ensure_indexes` creates.
"""
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Type, Union

from .models.account import AuthorCreditAccount
from .models.base import DBSerializableModel
from .models.campaign import Campaign
from .models.ledger import LedgerEntry
from .models.notification import NotificationEvent
from .models.purchase import CreditPurchase
from .models.results import IdempotencyRecord


STORED_MODELS: List[Type[DBSerializableModel]] = [
    AuthorCreditAccount,
    Campaign,
    LedgerEntry,
    CreditPurchase,
    IdempotencyRecord,
    NotificationEvent,
]

SQL_DIALECTS = ("postgres", "sqlite")

_SQL_TYPES: Dict[str, Dict[str, str]] = {
    "postgres": {
        "integer": "BIGINT",
        "number": "DOUBLE PRECISION",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TIMESTAMP WITH TIME ZONE",
        "object": "JSONB",
        "array": "JSONB",
    },
    "sqlite": {
        "integer": "INTEGER",
        "number": "REAL",
        "boolean": "BOOLEAN",
        "string": "TEXT",
        "datetime": "TEXT",
        "object": "TEXT",
        "array": "TEXT",
    },
}

_BSON_TYPES: Dict[str, List[str]] = {
    "integer": ["int", "long"],
    "number": ["double", "int", "long"],
    "boolean": ["bool"],
    "string": ["string"],
    "datetime": ["date"],
    "object": ["object"],
    "array": ["array"],
}

_MONGO_OPERATORS = {"=": "$eq", "<>": "$ne", ">": "$gt", ">=": "$gte", "<": "$lt", "<=": "$lte"}


def generate_logical_schema() -> Dict[str, Any]:
    """Schema description of every stored model, keyed by collection name."""
    return {model.collection_name: model.db_schema() for model in STORED_MODELS}


# SQL
def render_sql_ddl(schema: Dict[str, Any], dialect: str = "postgres") -> str:
    if dialect not in SQL_DIALECTS:
        raise ValueError(f"unsupported SQL dialect {dialect!r}; expected one of {SQL_DIALECTS}")

    statements: List[str] = []
    for table, table_schema in schema.items():
        primary_key = table_schema["primary_key"]
        definitions = [
            _sql_column(name, meta, dialect, meta["nullable"] and name != primary_key)
            for name, meta in table_schema["properties"].items()
        ]
        definitions.append(f'PRIMARY KEY ("{primary_key}")')
        for name, meta in table_schema["properties"].items():
            if meta.get("enum"):
                values = ", ".join(_sql_literal(v) for v in meta["enum"])
                definitions.append(f'CONSTRAINT "{table}_{name}_valid" CHECK ("{name}" IN ({values}))')
        for check in table_schema["checks"]:
            left = _sql_operand(check["field"], dialect)
            right = " + ".join(_sql_operand(o, dialect) for o in check["operands"])
            definitions.append(
                f'CONSTRAINT "{table}_{check["name"]}" CHECK ({left} {check["op"]} {right})'
            )
        body = ",\n".join(f"    {d}" for d in definitions)
        statements.append(f'CREATE TABLE IF NOT EXISTS "{table}" (\n{body}\n);')

        for index in table_schema["indexes"]:
            unique = "UNIQUE " if index["unique"] else ""
            columns = ", ".join(f'"{f}"' for f in index["fields"])
            statements.append(
                f'CREATE {unique}INDEX IF NOT EXISTS "{index["name"]}" ON "{table}" ({columns});'
            )
    return "\n\n".join(statements) + "\n"


def _sql_column(name: str, meta: Dict[str, Any], dialect: str, nullable: bool) -> str:
    column = f'"{name}" {_SQL_TYPES[dialect].get(meta["type"], "TEXT")}'
    # Every stored field is written; only Optional ones may hold NULL
    column += " NULL" if nullable else " NOT NULL"
    if meta["default"] is not None and meta["type"] not in ("object", "array"):
        column += f" DEFAULT {_sql_literal(meta['default'])}"
    return column


def _sql_operand(operand: Union[str, int], dialect: str) -> str:
    if isinstance(operand, int):
        return str(operand)
    column, _, key = operand.partition(".")
    if not key:
        return f'"{column}"'
    if dialect == "postgres":
        return f"(\"{column}\"->>'{key}')::bigint"
    return f"json_extract(\"{column}\", '$.{key}')"


def _sql_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


# MongoDB
def render_nosql_schema(schema: Dict[str, Any]) -> str:
    collections = {
        name: {
            "validator": collection_validator(collection_schema),
            "indexes": [
                {
                    "name": index["name"],
                    "key": {field: 1 for field in index["fields"]},
                    "unique": index["unique"],
                }
                for index in collection_schema["indexes"]
            ],
        }
        for name, collection_schema in schema.items()
    }
    return json.dumps(collections, indent=2)


def collection_validator(collection_schema: Dict[str, Any]) -> Dict[str, Any]:
    """
    MongoDB validator for one collection. Documents carry their primary key as
    a string `_id`; fields stored as None are omitted, so nullable fields are
    never required.
    """
    properties: Dict[str, Any] = {"_id": {"bsonType": "string"}}
    for name, meta in collection_schema["properties"].items():
        bson_types = list(_BSON_TYPES.get(meta["type"], ["string"]))
        prop: Dict[str, Any] = {"bsonType": bson_types[0] if len(bson_types) == 1 else bson_types}
        if meta.get("enum"):
            prop["enum"] = list(meta["enum"])
        if meta["description"]:
            prop["description"] = meta["description"]
        properties[name] = prop

    validator: Dict[str, Any] = {
        "$jsonSchema": {
            "bsonType": "object",
            "required": ["_id", *collection_schema["required"]],
            "properties": properties,
        }
    }
    checks = [_mongo_check(check) for check in collection_schema["checks"]]
    if checks:
        validator["$expr"] = {"$and": checks}
    return validator


def _mongo_check(check: Dict[str, Any]) -> Dict[str, Any]:
    operands = [_mongo_operand(o) for o in check["operands"]]
    right = operands[0] if len(operands) == 1 else {"$add": operands}
    return {_MONGO_OPERATORS[check["op"]]: [_mongo_operand(check["field"]), right]}


def _mongo_operand(operand: Union[str, int]) -> Union[str, int]:
    return operand if isinstance(operand, int) else f"${operand}"


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Render the campaign credit ledger's storage layout."
    )
    parser.add_argument("--backend", choices=["sql", "nosql"], required=True)
    parser.add_argument("--dialect", choices=SQL_DIALECTS, default="postgres")
    parser.add_argument(
        "--output", type=Path, help="Write to this file instead of standard output."
    )
    args = parser.parse_args()

    schema = generate_logical_schema()
    if args.backend == "sql":
        rendered = render_sql_ddl(schema, dialect=args.dialect)
    else:
        rendered = render_nosql_schema(schema)

    if args.output is None:
        print(rendered)
    else:
        args.output.write_text(rendered, encoding="utf-8")


if __name__ == "__main__":
    main()
