"""Push persisted readings to the upstream ingestion API."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from meter_collector.config.schema import UploadConfig
from meter_collector.db.repository import Repository

logger = logging.getLogger(__name__)

_UPLOAD_FIELDS = (
    "tenant_id", "meter_id", "meter_element_id", "data_point",
    "value", "unit", "quality", "source", "timestamp",
)


class ReadingUploader:
    """Posts un-uploaded readings in batches to ``POST /readings``.

    A batch is marked uploaded only after the server accepts it; a failed
    batch stops the run and is retried on the next fire.
    """

    def __init__(
        self,
        config: UploadConfig,
        repo: Repository,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._config = config
        self._repo = repo
        headers = {"Authorization": f"Bearer {config.api_key}"} if config.api_key else {}
        self._client = client or httpx.AsyncClient(
            base_url=config.base_url,
            headers=headers,
            timeout=config.timeout_seconds,
        )

    async def upload_pending(self) -> dict[str, Any]:
        uploaded = 0
        batches = 0
        while True:
            rows = await self._repo.get_unuploaded_readings(limit=self._config.batch_size)
            if not rows:
                break
            payload = [{k: row[k] for k in _UPLOAD_FIELDS} for row in rows]
            try:
                resp = await self._client.post("/readings", json={"readings": payload})
                resp.raise_for_status()
            except httpx.HTTPError as e:
                logger.warning(
                    "Reading upload failed after %d readings: %s", uploaded, e
                )
                return {"uploaded": uploaded, "batches": batches, "error": str(e)}
            await self._repo.mark_readings_uploaded([row["id"] for row in rows])
            uploaded += len(rows)
            batches += 1
            if len(rows) < self._config.batch_size:
                break

        if uploaded:
            logger.info("Uploaded %d readings in %d batches", uploaded, batches)
        return {"uploaded": uploaded, "batches": batches, "error": None}

    async def close(self) -> None:
        await self._client.aclose()
