from __future__ import annotations

import logging
import threading
from pathlib import Path

import requests

from .config import Endpoints

LOGGER = logging.getLogger("searchbench.telemetry")

CAPTURE_KINDS: tuple[str, ...] = ("trace", "profile")
CHUNK_SIZE = 64 * 1024


class TelemetryCollector:
    """Best-effort pprof trace and CPU profile capture.

    Failures are logged and never raised: a missing profile must not change the
    outcome of the case it was meant to observe.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        read_grace_seconds: float = 30.0,
    ) -> None:
        self._session = session or requests.Session()
        self._read_grace_seconds = read_grace_seconds

    def capture(self, endpoint: str, kind: str, output_path: Path, duration: float) -> bool:
        if kind not in CAPTURE_KINDS:
            raise ValueError(f"unknown capture kind {kind!r}")
        url = f"http://{endpoint}/debug/pprof/{kind}"
        params = {"seconds": int(duration)}
        try:
            with self._session.get(
                url,
                params=params,
                stream=True,
                timeout=(10.0, duration + self._read_grace_seconds),
            ) as response:
                response.raise_for_status()
                with open(output_path, "wb") as fh:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        if chunk:
                            fh.write(chunk)
        except requests.RequestException as exc:
            LOGGER.warning("failed to collect %s from %s: %s", kind, endpoint, exc)
            return False
        except OSError as exc:
            LOGGER.warning("failed to write %s to %s: %s", kind, output_path, exc)
            return False
        LOGGER.debug("Wrote %s from %s to %s", kind, endpoint, output_path)
        return True

    def start_case(
        self, endpoints: Endpoints, directory: Path, duration: float
    ) -> list[threading.Thread]:
        """Start every capture configured for ``endpoints`` in background threads."""

        threads: list[threading.Thread] = []
        for service, address in endpoints.debug_endpoints().items():
            for kind in CAPTURE_KINDS:
                extension = "trace" if kind == "trace" else "prof"
                output_path = directory / f"{service}.{extension}"
                thread = threading.Thread(
                    target=self._capture_quietly,
                    args=(address, kind, output_path, duration),
                    name=f"telemetry-{service}-{kind}",
                    daemon=True,
                )
                thread.start()
                threads.append(thread)
        if threads:
            LOGGER.info(
                "Capturing %d telemetry stream(s) for %.1fs into %s",
                len(threads),
                duration,
                directory,
            )
        return threads

    def _capture_quietly(self, endpoint: str, kind: str, output_path: Path, duration: float) -> None:
        try:
            self.capture(endpoint, kind, output_path, duration)
        except Exception:  # noqa: BLE001
            LOGGER.exception("telemetry capture %s from %s crashed", kind, endpoint)

    def close(self) -> None:
        self._session.close()
