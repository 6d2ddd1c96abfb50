"""
Client-side upload flow for the ContractIQ API.

Drives the two-step upload: detect the contract type, let the user confirm
it, then run the full analysis. The flow is a small state machine:

    upload -> detecting -> confirm -> processing -> done

A failed detect or analyze call drops back to ``upload`` with an error
message. While ``processing`` a ticker advances a cosmetic progress value;
the server reports no real progress.

Run ``python client.py contract.pdf --token <session token>`` to go through
the whole flow from a terminal.
"""
import argparse
import mimetypes
import os
import sys
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import requests
from loguru import logger

API_BASE = os.getenv("CONTRACTIQ_API_URL", "http://127.0.0.1:8080").rstrip("/")

PROGRESS_STEP = 5
PROGRESS_CAP = 95
PROGRESS_INTERVAL = 0.5


class InvalidTransition(Exception):
    pass


class ProgressTicker:
    """Advances a progress value on a fixed interval until it reaches the cap."""

    def __init__(self, on_tick: Callable[[], bool], interval: float = PROGRESS_INTERVAL):
        self._on_tick = on_tick
        self._interval = interval
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        while not self._stop.wait(self._interval):
            if not self._on_tick():
                return

    def stop(self):
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._interval * 2)
        self._thread = None


class ContractUploadFlow:
    def __init__(self, session=None, base_url: str = API_BASE, timeout: int = 120,
                 ticker_interval: float = PROGRESS_INTERVAL):
        self.session = session if session is not None else requests.Session()
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.ticker_interval = ticker_interval
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        self.step = "upload"
        self.file_name: Optional[str] = None
        self.file_bytes: Optional[bytes] = None
        self.detected_type: Optional[str] = None
        self.error: Optional[str] = None
        self.progress = 0
        self.result: Optional[Dict[str, Any]] = None

    # ----------------------
    # User actions
    # ----------------------
    def select_file(self, file_name: str, content: bytes, content_type: Optional[str] = None):
        content_type = content_type or mimetypes.guess_type(file_name)[0]
        if content_type != "application/pdf":
            self.file_name = None
            self.file_bytes = None
            self.step = "upload"
            self.error = "Only PDF files are allowed"
            return
        self.file_name = file_name
        self.file_bytes = content
        self.detected_type = None
        self.error = None
        self.step = "upload"

    def detect(self) -> Optional[str]:
        if self.step != "upload" or self.file_bytes is None:
            raise InvalidTransition(f"cannot detect from step {self.step!r} without a file")
        self.step = "detecting"
        try:
            resp = self.session.post(
                f"{self.base_url}/contracts/detect-type",
                files=self._files(),
                timeout=self.timeout,
            )
            resp.raise_for_status()
            detected = resp.json()["detectedType"]
        except Exception:
            logger.exception("detect-type request failed")
            self.error = "Failed to detect contract type"
            self.step = "upload"
            return None
        self.detected_type = detected
        self.step = "confirm"
        return detected

    def confirm(self, contract_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if self.step != "confirm" or self.file_bytes is None:
            raise InvalidTransition(f"cannot confirm from step {self.step!r}")
        contract_type = contract_type or self.detected_type
        self.step = "processing"
        self.progress = 0
        ticker = ProgressTicker(self.tick, interval=self.ticker_interval)
        ticker.start()
        try:
            resp = self.session.post(
                f"{self.base_url}/contracts/analyze",
                files=self._files(),
                data={"contractType": contract_type},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            result = resp.json()
        except Exception:
            logger.exception("analyze request failed")
            with self._lock:
                self.error = "Failed to upload contract"
                self.step = "upload"
            return None
        finally:
            ticker.stop()
        with self._lock:
            self.result = result
            self.progress = 100
            self.step = "done"
        return result

    def tick(self) -> bool:
        """Advance cosmetic progress; returns False once the ticker should stop."""
        with self._lock:
            if self.step != "processing" or self.progress >= PROGRESS_CAP:
                return False
            self.progress = min(self.progress + PROGRESS_STEP, PROGRESS_CAP)
            return True

    def _files(self):
        return {"contract": (self.file_name, self.file_bytes, "application/pdf")}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Upload a contract to ContractIQ and print its analysis.")
    parser.add_argument("pdf", type=Path)
    parser.add_argument("--token", default=os.getenv("CONTRACTIQ_TOKEN"), help="session token")
    parser.add_argument("--type", dest="contract_type", help="override the detected contract type")
    parser.add_argument("--api", default=API_BASE)
    args = parser.parse_args(argv)

    session = requests.Session()
    if args.token:
        session.headers.update({"Authorization": f"Bearer {args.token}"})
    flow = ContractUploadFlow(session=session, base_url=args.api)
    flow.select_file(args.pdf.name, args.pdf.read_bytes())
    if flow.error:
        print(flow.error, file=sys.stderr)
        return 1

    detected = flow.detect()
    if detected is None:
        print(flow.error, file=sys.stderr)
        return 1
    print(f"Detected type: {detected}")

    result = flow.confirm(args.contract_type)
    if result is None:
        print(flow.error, file=sys.stderr)
        return 1
    print(f"Overall score: {result.get('overallScore')}")
    for r in result.get("risks", []):
        print(f"  [risk/{r.get('severity')}] {r.get('risk')}")
    for o in result.get("opportunities", []):
        print(f"  [opportunity/{o.get('impact')}] {o.get('opportunity')}")
    print(f"Saved as {result.get('_id')}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
