"""
History polling and artifact URLs.

The polling path is the fallback (and the corroboration step) for the
event channel: it asks /history/{job_id} until the entry carries outputs.
Individual poll failures count as "not ready yet"; only the overall
deadline is fatal.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List

from backend.comfyui_errors import JobExecutionError, OutputTimeoutError
from backend.comfyui_utils import classify_media

logger = logging.getLogger("comfyui.materializer")

# History output keys that carry file descriptors
OUTPUT_KEYS = ("images", "gifs", "audio")

DEFAULT_POLL_INTERVAL = 1.5
DEFAULT_TIMEOUT = 300.0


@dataclass
class Asset:
    """A fetchable output file."""
    media_type: str  # image / video / audio / other
    url: str
    node_id: str
    filename: str
    subfolder: str = ""
    storage_type: str = "output"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "media_type": self.media_type,
            "url": self.url,
            "node_id": self.node_id,
            "filename": self.filename,
            "subfolder": self.subfolder,
            "storage_type": self.storage_type,
        }


def build_asset_urls(client, outputs: Dict[str, Any]) -> List[Asset]:
    """Convert a history `outputs` record into Assets with /view URLs."""
    assets = []
    for node_id, node_output in (outputs or {}).items():
        if not isinstance(node_output, dict):
            continue
        for output_key in OUTPUT_KEYS:
            for item in node_output.get(output_key) or []:
                if not isinstance(item, dict) or not item.get("filename"):
                    continue
                filename = item["filename"]
                subfolder = item.get("subfolder") or ""
                storage_type = item.get("type") or "output"
                assets.append(Asset(
                    media_type=classify_media(filename),
                    url=client.view_url(filename, subfolder, storage_type),
                    node_id=str(node_id),
                    filename=filename,
                    subfolder=subfolder,
                    storage_type=storage_type,
                ))
    return assets


class ResultMaterializer:
    """Polls job history until outputs appear."""

    def __init__(self, client, poll_interval: float = DEFAULT_POLL_INTERVAL,
                 timeout: float = DEFAULT_TIMEOUT):
        self.client = client
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def await_outputs(self, job_id: str, poll_interval: float = None,
                            timeout: float = None) -> Dict[str, Any]:
        """
        Return the job's outputs record.

        History is always asked at least once, even with no time left.

        Raises:
            OutputTimeoutError: timeout elapsed first
            JobExecutionError: the remote reported the job as failed
        """
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        timeout = self.timeout if timeout is None else timeout
        start = time.monotonic()
        attempts = 0

        while True:
            attempts += 1
            try:
                history = await self.client.get_history(job_id)
            except Exception as e:
                logger.debug(f"History poll {attempts} for {job_id} failed: {e}")
                history = None

            entry = history.get(job_id) if isinstance(history, dict) else None
            if isinstance(entry, dict):
                status = entry.get("status") or {}
                if status.get("status_str") == "error":
                    raise JobExecutionError(job_id, status.get("messages"))
                if entry.get("outputs") is not None:
                    logger.info(f"Outputs ready for job {job_id} after {attempts} poll(s)")
                    return entry["outputs"]

            if time.monotonic() - start >= timeout:
                logger.warning(f"Timed out after {attempts} polls waiting for job {job_id}")
                raise OutputTimeoutError(job_id, timeout)
            await asyncio.sleep(poll_interval)

    async def await_assets(self, job_id: str, **kwargs) -> List[Asset]:
        outputs = await self.await_outputs(job_id, **kwargs)
        return build_asset_urls(self.client, outputs)
