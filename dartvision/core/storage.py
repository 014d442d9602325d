"""
Calibration storage.

The core only needs get/set by key. Two stores are provided:

- InMemoryCalibrationStore: thread-safe dict, the default for a single host.
- HttpCalibrationStore: reads and writes records through the DartGame API
  (`{DARTGAME_API_URL}/api/calibrations/{key}`).
"""
import json
import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """The backing store could not be read or written."""


class InMemoryCalibrationStore:
    """Thread-safe in-memory storage for calibration records."""

    def __init__(self):
        self._store: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()

    def set(self, key: str, record: Dict[str, Any]) -> None:
        with self._lock:
            self._store[key] = {
                "data": dict(record),
                "created_at": datetime.now(timezone.utc),
            }

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._store.get(key)
            return dict(entry["data"]) if entry else None

    def delete(self, key: str) -> bool:
        """Delete a record. Returns True if it existed."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def list_all(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                {
                    "key": key,
                    "created_at": entry["created_at"],
                    "confidence": entry["data"].get("confidence", 0.0),
                }
                for key, entry in self._store.items()
            ]

    def clear(self) -> None:
        with self._lock:
            self._store.clear()


class HttpCalibrationStore:
    """
    Calibration records kept by the DartGame API.

    Records travel as JSON in the `calibrationData` field, matching what the
    game API already stores per camera.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = session or requests.Session()

    def _url(self, key: str) -> str:
        return f"{self.base_url}/api/calibrations/{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        url = self._url(key)
        logger.debug(f"[STORE] GET {url}")
        try:
            response = self._http.get(url, timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            body = response.json()
        except requests.RequestException as e:
            raise StorageError(f"Failed to load calibration '{key}': {e}") from e
        except ValueError as e:
            raise StorageError(f"Calibration '{key}' is not valid JSON: {e}") from e

        if not isinstance(body, dict):
            raise StorageError(f"Calibration '{key}' response is not an object")
        data = body.get("calibrationData") or body.get("calibration_data")
        # The game API may hand the record back as a JSON string
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as e:
                raise StorageError(f"Calibration '{key}' has invalid calibration data JSON: {e}") from e
        if data is None:
            return None
        if not isinstance(data, dict):
            raise StorageError(f"Calibration '{key}' has unexpected payload type {type(data).__name__}")
        return data

    def set(self, key: str, record: Dict[str, Any]) -> None:
        url = self._url(key)
        logger.debug(f"[STORE] PUT {url}")
        payload = {
            "cameraId": key,
            "calibrationData": record,
            "quality": record.get("confidence", 0.0) / 100.0,
        }
        try:
            response = self._http.put(url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise StorageError(f"Failed to save calibration '{key}': {e}") from e
        logger.info(f"[STORE] Saved calibration '{key}' to {self.base_url}")
