from __future__ import annotations

import json

import pytest

from campaign_credits.db.mongo import MongoDBManager
from campaign_credits.schema_generator import (
    collection_validator,
    generate_logical_schema,
    render_nosql_schema,
    render_sql_ddl,
)


def test_logical_schema_covers_every_collection():
    schema = generate_logical_schema()

    assert set(schema) == {
        "credit_accounts",
        "campaigns",
        "credit_ledger",
        "credit_purchases",
        "credit_idempotency_keys",
        "credit_notifications",
    }
    ledger = schema["credit_ledger"]
    assert ledger["properties"]["amount"]["type"] == "integer"
    assert ledger["properties"]["kind"]["enum"][0] == "purchase"
    assert ledger["properties"]["campaign_id"]["nullable"]
    assert ledger["indexes"][0] == {
        "name": "credit_ledger_account_id_sequence_key",
        "fields": ["account_id", "sequence"],
        "unique": True,
    }
    assert schema["campaigns"]["checks"][0]["operands"] == [
        "pool.credits_used",
        "pool.credits_remaining",
    ]
    assert schema["credit_idempotency_keys"]["primary_key"] == "key"


def test_postgres_ddl_enforces_ledger_invariants():
    ddl = render_sql_ddl(generate_logical_schema())

    assert 'CREATE TABLE IF NOT EXISTS "campaigns"' in ddl
    assert '"pool" JSONB NOT NULL' in ddl
    assert '"id" TEXT NOT NULL' in ddl
    assert '"campaign_id" TEXT NULL' in ddl
    assert '"created_at" TIMESTAMP WITH TIME ZONE NOT NULL' in ddl
    assert '"currency" TEXT NOT NULL DEFAULT \'USD\'' in ddl
    assert 'PRIMARY KEY ("key")' in ddl
    assert (
        'CONSTRAINT "campaigns_pool_balanced" CHECK '
        "((\"pool\"->>'credits_allocated')::bigint = "
        "(\"pool\"->>'credits_used')::bigint + (\"pool\"->>'credits_remaining')::bigint)"
    ) in ddl
    assert 'CONSTRAINT "credit_accounts_available_non_negative" CHECK ("available_credits" >= 0)' in ddl
    assert "CHECK (\"kind\" IN ('purchase', 'manual_adjustment'," in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "credit_ledger_account_id_sequence_key" '
        'ON "credit_ledger" ("account_id", "sequence");'
    ) in ddl
    assert (
        'CREATE UNIQUE INDEX IF NOT EXISTS "credit_purchases_payment_reference_key" '
        'ON "credit_purchases" ("payment_reference");'
    ) in ddl
    assert 'CREATE INDEX IF NOT EXISTS "campaigns_account_id_idx"' in ddl


def test_sqlite_ddl_reads_nested_pool_with_json_extract():
    ddl = render_sql_ddl(generate_logical_schema(), dialect="sqlite")

    assert '"pool" TEXT NOT NULL' in ddl
    assert "json_extract(\"pool\", '$.credits_allocated') = " in ddl
    assert "JSONB" not in ddl

    with pytest.raises(ValueError):
        render_sql_ddl(generate_logical_schema(), dialect="oracle")


def test_mongo_validator_carries_enums_and_pool_balance():
    validator = collection_validator(generate_logical_schema()["campaigns"])

    json_schema = validator["$jsonSchema"]
    assert json_schema["required"] == ["_id", "account_id"]
    assert json_schema["properties"]["pool"]["bsonType"] == "object"
    assert validator["$expr"]["$and"][0] == {
        "$eq": [
            "$pool.credits_allocated",
            {"$add": ["$pool.credits_used", "$pool.credits_remaining"]},
        ]
    }

    ledger = collection_validator(generate_logical_schema()["credit_ledger"])
    assert "refund" in ledger["$jsonSchema"]["properties"]["kind"]["enum"]
    assert {"$gte": ["$sequence", 1]} in ledger["$expr"]["$and"]


def test_nosql_output_lists_indexes_per_collection():
    rendered = json.loads(render_nosql_schema(generate_logical_schema()))

    assert rendered["credit_purchases"]["indexes"][0] == {
        "name": "credit_purchases_payment_reference_key",
        "key": {"payment_reference": 1},
        "unique": True,
    }
    assert rendered["credit_notifications"]["indexes"] == []
    assert "$expr" not in rendered["credit_notifications"]["validator"]


class _RecordingCollection:
    def __init__(self, name, calls):
        self._name = name
        self._calls = calls

    async def create_index(self, keys, **kwargs):
        self._calls.append((self._name, keys, kwargs))


class _RecordingDatabase:
    def __init__(self):
        self.calls = []

    def __getitem__(self, name):
        return _RecordingCollection(name, self.calls)


@pytest.mark.asyncio
async def test_mongo_ensure_indexes_uses_declared_indexes():
    database = _RecordingDatabase()

    await MongoDBManager(database).ensure_indexes()

    assert (
        "credit_ledger",
        [("account_id", 1), ("sequence", 1)],
        {"unique": True, "name": "credit_ledger_account_id_sequence_key"},
    ) in database.calls
    assert (
        "credit_purchases",
        [("payment_reference", 1)],
        {"unique": True, "name": "credit_purchases_payment_reference_key"},
    ) in database.calls
    names = {kwargs["name"] for _, _, kwargs in database.calls}
    assert "campaigns_account_id_idx" in names
