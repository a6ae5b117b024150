"""Request Repository - Data access for CRA requests"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from pymongo import DESCENDING, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database

from .mongo_client import get_collection, to_document, REQUESTS
from ..domain.models import RequestRecord, StatusHistoryEntry
from ..utils.logger import get_logger

logger = get_logger(__name__)


class RequestRepository:
    """Repository for request documents"""

    def __init__(self, db: Optional[Database] = None):
        self._requests: Collection = get_collection(REQUESTS, db)

    def create_request(self, record: RequestRecord) -> RequestRecord:
        """Insert a new request"""
        doc = to_document(record)
        doc["_id"] = record.request_id

        self._requests.insert_one(doc)
        logger.info(
            f"Created request: {record.request_id}",
            extra={"request_id": record.request_id, "status": record.status.value}
        )
        return record

    def get_request(self, request_id: str) -> Optional[RequestRecord]:
        """Get request by ID"""
        doc = self._requests.find_one({"request_id": request_id})
        if doc:
            doc.pop("_id", None)
            return RequestRecord.model_validate(doc)
        return None

    def list_requests(self, skip: int = 0, limit: int = 200) -> List[RequestRecord]:
        """List requests, most recently updated first"""
        cursor = (
            self._requests.find({})
            .sort("updated_at", DESCENDING)
            .skip(skip)
            .limit(limit)
        )
        records = []
        for doc in cursor:
            doc.pop("_id", None)
            records.append(RequestRecord.model_validate(doc))
        return records

    def append_status(
        self,
        request_id: str,
        entry: StatusHistoryEntry,
        payload: Dict[str, Any],
        updated_at: datetime,
        expected_version: Optional[int] = None
    ) -> Optional[RequestRecord]:
        """
        Write a new status and its history entry in one atomic update.

        Status, payload, timestamp and the history push land together, so a
        reader never sees the status without its history entry.

        Args:
            request_id: Request to update
            entry: History entry carrying the new status
            payload: Normalized business payload to store
            updated_at: Server timestamp of the change
            expected_version: If set, only update when the stored version matches

        Returns:
            The updated request, or None if no document matched
        """
        query: Dict[str, Any] = {"request_id": request_id}
        if expected_version is not None:
            query["version"] = expected_version

        result = self._requests.find_one_and_update(
            query,
            {
                "$set": {
                    "status": entry.status.value,
                    "payload": payload,
                    "updated_at": updated_at,
                },
                "$push": {"history": to_document(entry)},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None

        result.pop("_id", None)
        return RequestRecord.model_validate(result)

    def update_payload(
        self,
        request_id: str,
        payload: Dict[str, Any],
        updated_at: datetime,
        expected_version: Optional[int] = None
    ) -> Optional[RequestRecord]:
        """Replace the business payload without touching status or history"""
        query: Dict[str, Any] = {"request_id": request_id}
        if expected_version is not None:
            query["version"] = expected_version

        result = self._requests.find_one_and_update(
            query,
            {
                "$set": {"payload": payload, "updated_at": updated_at},
                "$inc": {"version": 1},
            },
            return_document=ReturnDocument.AFTER
        )
        if result is None:
            return None

        result.pop("_id", None)
        return RequestRecord.model_validate(result)
