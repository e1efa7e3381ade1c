"""HTTP clients that pull a patient's records from a running MediTrack API."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from .models import Appointment, HealthEvent, PatientHistoryRecord
from .timeline import build_timeline

logger = logging.getLogger(__name__)


class FetchError(RuntimeError):
    """Raised when a record collection cannot be retrieved."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RecordFetcher:
    """Fetches appointments and history for one patient over a session cookie.

    Pass ``client`` to reuse an existing ``httpx.Client`` (or a mock transport
    in tests); otherwise one is created against ``base_url``.
    """

    def __init__(self, base_url: str, client: Optional[httpx.Client] = None, timeout: float = 15.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    def __enter__(self) -> "RecordFetcher":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise FetchError(
                f"{method} {path} failed with {exc.response.status_code}: {exc.response.text}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise FetchError(f"{method} {path} failed: {exc}") from exc
        return response

    def login(self, username: str, password: str) -> Dict[str, Any]:
        response = self._request("POST", "/auth/login", json={"username": username, "password": password})
        user = response.json()
        logger.info("Logged in to %s as %s", self.base_url, user.get("username"))
        return user

    def fetch_appointments(self, patient_id: int) -> List[Appointment]:
        response = self._request("GET", f"/patients/{patient_id}/appointments")
        return [Appointment.model_validate(item) for item in response.json()]

    def fetch_history(self, patient_id: int) -> List[PatientHistoryRecord]:
        response = self._request("GET", f"/patients/{patient_id}/history")
        return [PatientHistoryRecord.model_validate(item) for item in response.json()]


def load_timeline(fetcher: RecordFetcher, patient_id: int) -> List[HealthEvent]:
    """Fetch both collections, then build the timeline.

    A failed fetch raises ``FetchError`` before anything is built.
    """
    appointments = fetcher.fetch_appointments(patient_id)
    history = fetcher.fetch_history(patient_id)
    return build_timeline(appointments, history)
