from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence, Type, TypeVar
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, OperationFailure, PyMongoError

from .base import BaseDBManager
from ..errors import TransientStorageError
from ..models.account import AuthorCreditAccount
from ..models.base import DBSerializableModel
from ..models.campaign import Campaign, CampaignStatus
from ..models.ledger import LedgerEntry, LedgerEntryKind
from ..models.notification import NotificationEvent
from ..models.purchase import CreditPurchase
from ..models.results import IdempotencyRecord
from ..schema_generator import STORED_MODELS


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a client session with a multi-document transaction
    (requires a replica set). Reads with `for_update=True` stamp a fresh
    `lock_token` on the document, which takes the document's write lock for
    the rest of the transaction: a concurrent transaction touching the same
    account or campaign aborts with a write conflict, surfaced as
    `TransientStorageError`.
    """

    def __init__(self, database: AsyncIOMotorDatabase) -> None:
        self._db = database
        self._session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
            f"mongo_session_{id(self)}", default=None
        )

    @classmethod
    def from_client_uri(cls, uri: str, db_name: str) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name])

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        try:
            session = await self._db.client.start_session()
        except ConnectionFailure as exc:
            raise TransientStorageError(str(exc)) from exc

        token = self._session.set(session)
        try:
            async with session:
                try:
                    async with session.start_transaction():
                        yield
                except OperationFailure as exc:
                    if exc.has_error_label("TransientTransactionError"):
                        logger.warning("Mongo transaction aborted: %s", exc)
                        raise TransientStorageError(str(exc)) from exc
                    raise
                except ConnectionFailure as exc:
                    raise TransientStorageError(str(exc)) from exc
        finally:
            self._session.reset(token)

    @property
    def _current_session(self) -> Optional[AsyncIOMotorClientSession]:
        return self._session.get()

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _prepare_update(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            raise ValueError("Model must have id to be updated")
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        data.pop("lock_token", None)
        if "_id" in data and "id" not in data:
            data["id"] = str(data["_id"])
        return model_cls.model_validate(data)

    async def _find_one(
        self, collection: str, doc_id: str, for_update: bool
    ) -> Optional[Mapping[str, Any]]:
        col = self._db[collection]
        session = self._current_session
        if for_update and session is not None:
            return await col.find_one_and_update(
                {"_id": doc_id},
                {"$set": {"lock_token": uuid4().hex}},
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        return await col.find_one({"_id": doc_id}, session=session)

    async def _replace(self, collection: str, data: Dict[str, Any]) -> None:
        try:
            await self._db[collection].replace_one(
                {"_id": data["_id"]}, data, upsert=True, session=self._current_session
            )
        except PyMongoError as exc:
            if isinstance(exc, OperationFailure) and exc.has_error_label("TransientTransactionError"):
                raise TransientStorageError(str(exc)) from exc
            raise

    # Account operations
    async def add_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount:
        data = self._prepare_insert(account)
        await self._db[AuthorCreditAccount.collection_name].insert_one(
            data, session=self._current_session
        )
        return account

    async def get_account(
        self, account_id: str, for_update: bool = False
    ) -> Optional[AuthorCreditAccount]:
        doc = await self._find_one(AuthorCreditAccount.collection_name, account_id, for_update)
        return self._decode(AuthorCreditAccount, doc)

    async def update_account(self, account: AuthorCreditAccount) -> AuthorCreditAccount:
        await self._replace(AuthorCreditAccount.collection_name, self._prepare_update(account))
        return account

    # Campaign operations
    async def add_campaign(self, campaign: Campaign) -> Campaign:
        data = self._prepare_insert(campaign)
        await self._db[Campaign.collection_name].insert_one(data, session=self._current_session)
        return campaign

    async def get_campaign(
        self, campaign_id: str, for_update: bool = False
    ) -> Optional[Campaign]:
        doc = await self._find_one(Campaign.collection_name, campaign_id, for_update)
        return self._decode(Campaign, doc)

    async def update_campaign(self, campaign: Campaign) -> Campaign:
        await self._replace(Campaign.collection_name, self._prepare_update(campaign))
        return campaign

    async def list_campaigns(
        self,
        account_id: Optional[str] = None,
        statuses: Optional[Sequence[CampaignStatus]] = None,
    ) -> Iterable[Campaign]:
        query: Dict[str, Any] = {}
        if account_id is not None:
            query["account_id"] = account_id
        if statuses is not None:
            query["pacing.status"] = {"$in": [s.value for s in statuses]}
        cursor = self._db[Campaign.collection_name].find(query, session=self._current_session)
        docs = await cursor.to_list(length=None)
        return [self._decode(Campaign, d) for d in docs if d is not None]  # type: ignore[misc]

    # Ledger store
    async def append_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        col = self._db[LedgerEntry.collection_name]
        last = await col.find_one(
            {"account_id": entry.account_id},
            sort=[("sequence", -1)],
            session=self._current_session,
        )
        sequence = (last or {}).get("sequence", 0) + 1
        stored = entry.model_copy(update={"id": entry.id or uuid4().hex, "sequence": sequence})
        data = stored.serialize_for_db()
        data["_id"] = stored.id
        await col.insert_one(data, session=self._current_session)
        return stored

    async def get_ledger_entries(
        self,
        account_id: str,
        kinds: Optional[Sequence[LedgerEntryKind]] = None,
    ) -> List[LedgerEntry]:
        query: Dict[str, Any] = {"account_id": account_id}
        if kinds is not None:
            query["kind"] = {"$in": [k.value for k in kinds]}
        cursor = self._db[LedgerEntry.collection_name].find(
            query, session=self._current_session
        ).sort("sequence", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(LedgerEntry, d) for d in docs if d is not None]  # type: ignore[misc]

    # Purchases
    async def add_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        data = self._prepare_insert(purchase)
        await self._db[CreditPurchase.collection_name].insert_one(
            data, session=self._current_session
        )
        return purchase

    async def update_purchase(self, purchase: CreditPurchase) -> CreditPurchase:
        await self._replace(CreditPurchase.collection_name, self._prepare_update(purchase))
        return purchase

    async def get_purchase_by_reference(
        self, payment_reference: str
    ) -> Optional[CreditPurchase]:
        doc = await self._db[CreditPurchase.collection_name].find_one(
            {"payment_reference": payment_reference}, session=self._current_session
        )
        return self._decode(CreditPurchase, doc)

    async def get_purchases(
        self, account_id: Optional[str] = None
    ) -> List[CreditPurchase]:
        query: Dict[str, Any] = {} if account_id is None else {"account_id": account_id}
        cursor = self._db[CreditPurchase.collection_name].find(
            query, session=self._current_session
        ).sort("activation_window_expires_at", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(CreditPurchase, d) for d in docs if d is not None]  # type: ignore[misc]

    # Idempotency keys
    async def get_idempotency_record(self, key: str) -> Optional[IdempotencyRecord]:
        doc = await self._db[IdempotencyRecord.collection_name].find_one(
            {"_id": key}, session=self._current_session
        )
        return self._decode(IdempotencyRecord, doc)

    async def add_idempotency_record(self, record: IdempotencyRecord) -> IdempotencyRecord:
        data = record.serialize_for_db()
        data["_id"] = record.key
        await self._db[IdempotencyRecord.collection_name].insert_one(
            data, session=self._current_session
        )
        return record

    # Notifications
    async def add_notification_event(
        self, notification: NotificationEvent
    ) -> NotificationEvent:
        data = self._prepare_insert(notification)
        await self._db[NotificationEvent.collection_name].insert_one(
            data, session=self._current_session
        )
        return notification

    async def ensure_indexes(self) -> None:
        """Create the unique and lookup indexes declared on the stored models."""
        for model in STORED_MODELS:
            for index in model.indexes:
                await self._db[model.collection_name].create_index(
                    [(field, ASCENDING) for field in index.fields],
                    unique=index.unique,
                    name=index.name_for(model.collection_name),
                )
