"""
Delivery sessions: upload every composite of a customer delivery, then record it.

A `DeliverySession` owns one upload queue and one connectivity monitor for its
lifetime (no process-wide singletons). The delivery record is written exactly
once, and only after every artifact of the delivery has uploaded.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, Dict, List, Optional, Sequence
from urllib.parse import quote
import uuid

import httpx
from pydantic import BaseModel, Field, field_validator

from . import config
from .cancellation import CancellationToken
from .connectivity import ConnectivityMonitor
from .errors import DeliveryIncomplete, DeliveryRecordError, InvalidInput
from .models import CompositeResult, FrameId
from .storage import ObjectStorage, build_destination_key
from .upload_queue import UploadEvent, UploadQueue

logger = logging.getLogger(__name__)

DEFAULT_SHARE_MESSAGE = "Thank you for choosing us! Here's your delivery photo."


class DeliveryRecord(BaseModel):
    vehicleId: str
    operatorId: str
    customerName: str = Field(min_length=1)
    contactNumber: str = Field(min_length=1)
    photoUrls: List[str]
    consentToShare: bool
    deliveryId: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("customerName", "contactNumber")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


def whatsapp_share_url(contact_number: str, message: str = DEFAULT_SHARE_MESSAGE) -> str:
    digits = re.sub(r"[^0-9]", "", contact_number)
    if not digits:
        raise InvalidInput("Contact number has no digits")
    return f"https://wa.me/{digits}?text={quote(message)}"


class DeliveryRecordClient:
    """Posts delivery records to the dashboard backend."""

    def __init__(self, url: str, *, client: Optional[httpx.AsyncClient] = None, timeout: float = 15.0) -> None:
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "DeliveryRecordClient":
        settings = settings or config.get_settings()
        if not settings.delivery_record_url:
            raise RuntimeError("DELIVERY_RECORD_URL is not configured.")
        return cls(settings.delivery_record_url, timeout=settings.request_timeout_seconds)

    async def write(self, record: DeliveryRecord) -> None:
        try:
            resp = await self._client.post(self.url, json=record.model_dump())
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise DeliveryRecordError(f"Could not write delivery record: {exc}") from exc
        logger.info("Delivery record %s written with %d photos", record.deliveryId, len(record.photoUrls))

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DeliverySession:
    def __init__(
        self,
        storage: ObjectStorage,
        record_client: DeliveryRecordClient,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
        queue: Optional[UploadQueue] = None,
        settings: Optional[config.Settings] = None,
    ) -> None:
        self.settings = settings or config.get_settings()
        self.record_client = record_client
        self.monitor = monitor or ConnectivityMonitor(
            probe_url=self.settings.connectivity_probe_url,
            probe_interval=self.settings.connectivity_probe_interval,
        )
        self.queue = queue or UploadQueue(
            storage,
            monitor=self.monitor,
            max_retries=self.settings.upload_max_retries,
            backoff_base=self.settings.upload_backoff_seconds,
        )

    async def __aenter__(self) -> "DeliverySession":
        await self.monitor.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self.queue.close()
        await self.monitor.close()

    async def deliver(
        self,
        results: Sequence[CompositeResult],
        *,
        vehicle_id: str,
        operator_id: str,
        customer_name: str,
        contact_number: str,
        consent: bool,
        on_progress: Optional[Callable[[FrameId, UploadEvent], None]] = None,
        token: Optional[CancellationToken] = None,
    ) -> DeliveryRecord:
        """
        Upload all composites, then write one delivery record.

        Raises:
            InvalidInput: missing customer details or no composites.
            DeliveryIncomplete: at least one upload failed or was cancelled.
            DeliveryRecordError: every upload succeeded but the record write failed.
        """
        if not results:
            raise InvalidInput("A delivery needs at least one composite")
        if not customer_name.strip() or not contact_number.strip():
            raise InvalidInput("Customer name and contact number are required")

        delivery_id = uuid.uuid4().hex
        tasks = []
        for result in results:
            progress = None
            if on_progress is not None:
                progress = lambda event, frame_id=result.frame_id: on_progress(frame_id, event)  # noqa: E731
            tasks.append(
                self.queue.submit(
                    result.data,
                    build_destination_key(self.settings.storage_key_prefix, delivery_id, result.frame_id, result.extension),
                    content_type=result.content_type,
                    on_progress=progress,
                    token=token,
                )
            )

        outcomes = await asyncio.gather(*(task.future for task in tasks), return_exceptions=True)
        failures: Dict[FrameId, BaseException] = {}
        urls: List[str] = []
        for result, outcome in zip(results, outcomes):
            if isinstance(outcome, BaseException):
                failures[result.frame_id] = outcome
            else:
                urls.append(outcome)
        if failures:
            logger.error("Delivery %s incomplete: %d of %d uploads failed", delivery_id, len(failures), len(results))
            raise DeliveryIncomplete(failures, uploaded=urls)

        record = DeliveryRecord(
            vehicleId=str(vehicle_id),
            operatorId=str(operator_id),
            customerName=customer_name,
            contactNumber=contact_number,
            photoUrls=urls,
            consentToShare=consent,
            deliveryId=delivery_id,
        )
        await self.record_client.write(record)
        return record
