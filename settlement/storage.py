"""Repository contract and the in-memory store with per-key locks and an undo journal."""

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Iterator, Optional, Union
from uuid import UUID

import structlog

from .errors import BusinessNotFound, MediaNotFound
from .models import Business, Collection, License, Media, TransactionRecord

logger = structlog.get_logger(__name__)

Delta = Union[int, Decimal]

COUNTER_FIELDS = frozenset({
    "revenue_balance",
    "total_earnings",
    "total_spent",
    "active_license_count",
    "upload_count",
    "download_count",
})

REFERENCE_FIELDS = {
    "payment_intent": "payment_intent_id",
    "charge": "charge_id",
    "payout": "payout_id",
    "refund": "refund_id",
    "transfer": "transfer_id",
}


class StorageError(Exception):
    pass


class DuplicateReferenceError(StorageError):
    pass


class SettlementStore(ABC):
    @abstractmethod
    def atomic(self, *keys: str):
        """Context manager: serialise on ``keys`` and commit all writes or none."""

    # Transactions
    @abstractmethod
    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]: ...

    @abstractmethod
    def find_transaction(self, **reference: str) -> Optional[TransactionRecord]:
        """Look up by one provider reference, e.g. ``find_transaction(charge="ch_1")``."""

    @abstractmethod
    def save_transaction(self, record: TransactionRecord) -> TransactionRecord: ...

    @abstractmethod
    def list_transactions(self, **filters: Any) -> list[TransactionRecord]: ...

    # Licenses
    @abstractmethod
    def get_license(self, license_id: UUID) -> Optional[License]: ...

    @abstractmethod
    def save_license(self, license: License) -> License: ...

    @abstractmethod
    def list_licenses(self, **filters: Any) -> list[License]: ...

    # Businesses
    @abstractmethod
    def add_business(self, business: Business) -> Business: ...

    @abstractmethod
    def get_business(self, business_id: UUID) -> Optional[Business]: ...

    @abstractmethod
    def find_business(self, **fields: Any) -> Optional[Business]: ...

    @abstractmethod
    def update_business(self, business_id: UUID, **fields: Any) -> Business:
        """Set non-counter fields. Counters only move through ``increment``."""

    @abstractmethod
    def increment(self, business_id: UUID, field: str, delta: Delta,
                  minimum: Optional[Delta] = None, maximum: Optional[Delta] = None) -> bool:
        """Apply ``delta`` atomically. Returns False, changing nothing, if the
        result would fall outside ``minimum`` or ``maximum``."""

    # Media and collections
    @abstractmethod
    def add_media(self, media: Media) -> Media: ...

    @abstractmethod
    def get_media(self, media_id: UUID) -> Optional[Media]: ...

    @abstractmethod
    def increment_media(self, media_id: UUID, field: str, delta: int,
                        minimum: Optional[int] = None) -> bool: ...

    @abstractmethod
    def add_active_license(self, media_id: UUID, license_id: UUID) -> bool: ...

    @abstractmethod
    def remove_active_license(self, media_id: UUID, license_id: UUID) -> bool: ...

    @abstractmethod
    def add_collection(self, collection: Collection) -> Collection: ...

    @abstractmethod
    def get_collection(self, collection_id: UUID) -> Optional[Collection]: ...

    # Processed provider events
    @abstractmethod
    def is_event_processed(self, event_id: str) -> bool: ...

    @abstractmethod
    def mark_event_processed(self, event_id: str, event_type: str) -> None: ...


class InMemoryStorage(SettlementStore):
    def __init__(self):
        self.transactions: dict[UUID, TransactionRecord] = {}
        self.licenses: dict[UUID, License] = {}
        self.businesses: dict[UUID, Business] = {}
        self.media: dict[UUID, Media] = {}
        self.collections: dict[UUID, Collection] = {}
        self.processed_events: dict[str, dict] = {}
        self.reference_index: dict[tuple[str, str], UUID] = {}

        self._lock = threading.RLock()
        self._key_locks: dict[str, threading.RLock] = {}
        self._local = threading.local()

    # Units of work

    def _key_lock(self, key: str) -> threading.RLock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.RLock())

    @contextmanager
    def atomic(self, *keys: str) -> Iterator["InMemoryStorage"]:
        """
        Nested units join the outermost one: their writes commit or roll back
        with it. Nested units should not introduce new keys across threads.
        """
        locks = [self._key_lock(key) for key in sorted({str(k) for k in keys if k})]
        for lock in locks:
            lock.acquire()
        outer = getattr(self._local, "journal", None)
        journal = outer if outer is not None else []
        self._local.journal = journal
        try:
            yield self
        except Exception:
            if outer is None:
                self._rollback(journal)
            raise
        finally:
            if outer is None:
                self._local.journal = None
            for lock in reversed(locks):
                lock.release()

    def _record_undo(self, undo: Callable[[], None]) -> None:
        journal = getattr(self._local, "journal", None)
        if journal is not None:
            journal.append(undo)

    def _rollback(self, journal: list) -> None:
        with self._lock:
            for undo in reversed(journal):
                undo()
        logger.warning("unit_of_work_rolled_back", writes=len(journal))

    # Transactions

    def get_transaction(self, transaction_id: UUID) -> Optional[TransactionRecord]:
        with self._lock:
            record = self.transactions.get(transaction_id)
            return record.model_copy(deep=True) if record else None

    def find_transaction(self, **reference: str) -> Optional[TransactionRecord]:
        if len(reference) != 1:
            raise ValueError("find_transaction takes exactly one provider reference")
        (kind, value), = reference.items()
        if kind not in REFERENCE_FIELDS:
            raise ValueError(f"Unknown provider reference kind: {kind}")
        if not value:
            return None
        with self._lock:
            transaction_id = self.reference_index.get((kind, value))
            return self.get_transaction(transaction_id) if transaction_id else None

    def _index_references(self, record: Optional[TransactionRecord], add: bool) -> None:
        if record is None:
            return
        for kind, value in record.provider_references().items():
            if add:
                self.reference_index[(kind, value)] = record.id
            elif self.reference_index.get((kind, value)) == record.id:
                del self.reference_index[(kind, value)]

    def _put_transaction(self, record: Optional[TransactionRecord], transaction_id: UUID) -> None:
        self._index_references(self.transactions.get(transaction_id), add=False)
        if record is None:
            self.transactions.pop(transaction_id, None)
        else:
            self.transactions[transaction_id] = record
            self._index_references(record, add=True)

    def save_transaction(self, record: TransactionRecord) -> TransactionRecord:
        record.check_amounts()
        with self._lock:
            for kind, value in record.provider_references().items():
                owner = self.reference_index.get((kind, value))
                if owner is not None and owner != record.id:
                    raise DuplicateReferenceError(
                        f"{kind} reference {value} already belongs to transaction {owner}"
                    )
            previous = self.transactions.get(record.id)
            self._put_transaction(record.model_copy(deep=True), record.id)
            self._record_undo(lambda: self._put_transaction(previous, record.id))
        return record

    def list_transactions(self, **filters: Any) -> list[TransactionRecord]:
        with self._lock:
            records = [
                r.model_copy(deep=True) for r in self.transactions.values()
                if all(getattr(r, name) == value for name, value in filters.items())
            ]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    # Licenses

    def get_license(self, license_id: UUID) -> Optional[License]:
        with self._lock:
            license = self.licenses.get(license_id)
            return license.model_copy(deep=True) if license else None

    def _put_license(self, license: Optional[License], license_id: UUID) -> None:
        if license is None:
            self.licenses.pop(license_id, None)
        else:
            self.licenses[license_id] = license

    def save_license(self, license: License) -> License:
        with self._lock:
            previous = self.licenses.get(license.id)
            self._put_license(license.model_copy(deep=True), license.id)
            self._record_undo(lambda: self._put_license(previous, license.id))
        return license

    def list_licenses(self, **filters: Any) -> list[License]:
        with self._lock:
            licenses = [
                lic.model_copy(deep=True) for lic in self.licenses.values()
                if all(getattr(lic, name) == value for name, value in filters.items())
            ]
        licenses.sort(key=lambda lic: lic.created_at, reverse=True)
        return licenses

    # Businesses

    def add_business(self, business: Business) -> Business:
        with self._lock:
            self.businesses[business.id] = business.model_copy(deep=True)
            self._record_undo(lambda: self.businesses.pop(business.id, None))
        return business

    def get_business(self, business_id: UUID) -> Optional[Business]:
        with self._lock:
            business = self.businesses.get(business_id)
            return business.model_copy(deep=True) if business else None

    def find_business(self, **fields: Any) -> Optional[Business]:
        if not fields or any(value is None for value in fields.values()):
            return None
        with self._lock:
            for business in self.businesses.values():
                if all(getattr(business, name) == value for name, value in fields.items()):
                    return business.model_copy(deep=True)
        return None

    def _stored_business(self, business_id: UUID) -> Business:
        business = self.businesses.get(business_id)
        if business is None:
            raise BusinessNotFound(f"Business {business_id} not found")
        return business

    def update_business(self, business_id: UUID, **fields: Any) -> Business:
        counters = COUNTER_FIELDS.intersection(fields)
        if counters:
            raise StorageError(f"Counter fields must be changed with increment(): {sorted(counters)}")
        with self._lock:
            business = self._stored_business(business_id)
            previous = {name: getattr(business, name) for name in fields}
            for name, value in fields.items():
                setattr(business, name, value)

            # A field another unit has since overwritten keeps its newer value.
            def undo():
                for name, value in previous.items():
                    if getattr(business, name) == fields[name]:
                        setattr(business, name, value)

            self._record_undo(undo)
            return business.model_copy(deep=True)

    def increment(self, business_id: UUID, field: str, delta: Delta,
                  minimum: Optional[Delta] = None, maximum: Optional[Delta] = None) -> bool:
        if field not in COUNTER_FIELDS:
            raise StorageError(f"{field} is not a counter field")
        with self._lock:
            business = self._stored_business(business_id)
            updated = getattr(business, field) + delta
            if minimum is not None and updated < minimum:
                return False
            if maximum is not None and updated > maximum:
                return False
            setattr(business, field, updated)
            self._record_undo(lambda: setattr(business, field, getattr(business, field) - delta))
            return True

    # Media and collections

    def add_media(self, media: Media) -> Media:
        with self._lock:
            self.media[media.id] = media.model_copy(deep=True)
            self._record_undo(lambda: self.media.pop(media.id, None))
        return media

    def get_media(self, media_id: UUID) -> Optional[Media]:
        with self._lock:
            media = self.media.get(media_id)
            return media.model_copy(deep=True) if media else None

    def _stored_media(self, media_id: UUID) -> Media:
        media = self.media.get(media_id)
        if media is None:
            raise MediaNotFound(f"Media {media_id} not found")
        return media

    def increment_media(self, media_id: UUID, field: str, delta: int,
                        minimum: Optional[int] = None) -> bool:
        with self._lock:
            media = self._stored_media(media_id)
            updated = getattr(media, field) + delta
            if minimum is not None and updated < minimum:
                return False
            setattr(media, field, updated)
            self._record_undo(lambda: setattr(media, field, getattr(media, field) - delta))
            return True

    def add_active_license(self, media_id: UUID, license_id: UUID) -> bool:
        with self._lock:
            media = self._stored_media(media_id)
            if license_id in media.active_license_ids:
                return False
            media.active_license_ids.append(license_id)
            self._record_undo(lambda: media.active_license_ids.remove(license_id))
            return True

    def remove_active_license(self, media_id: UUID, license_id: UUID) -> bool:
        with self._lock:
            media = self._stored_media(media_id)
            if license_id not in media.active_license_ids:
                return False
            media.active_license_ids.remove(license_id)
            self._record_undo(lambda: media.active_license_ids.append(license_id))
            return True

    def add_collection(self, collection: Collection) -> Collection:
        with self._lock:
            self.collections[collection.id] = collection.model_copy(deep=True)
            self._record_undo(lambda: self.collections.pop(collection.id, None))
        return collection

    def get_collection(self, collection_id: UUID) -> Optional[Collection]:
        with self._lock:
            collection = self.collections.get(collection_id)
            return collection.model_copy(deep=True) if collection else None

    # Processed provider events

    def is_event_processed(self, event_id: str) -> bool:
        with self._lock:
            return event_id in self.processed_events

    def mark_event_processed(self, event_id: str, event_type: str) -> None:
        with self._lock:
            self.processed_events[event_id] = {
                "type": event_type,
                "processed_at": datetime.now(timezone.utc),
            }
            self._record_undo(lambda: self.processed_events.pop(event_id, None))
