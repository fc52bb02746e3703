import hashlib
import json
import os
import threading
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .models import ScheduleJob


class ScheduleStore:
    """Persists schedule jobs as `{"jobs": {<id>: job}}`, rewritten wholesale on every change."""

    def __init__(self, store_path: Path):
        self.store_path = Path(store_path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, ScheduleJob]:
        if not self.store_path.exists():
            return {}

        try:
            data = json.loads(self.store_path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Could not read schedule file {self.store_path}: {e}")
            return {}

        raw_jobs = data.get("jobs") if isinstance(data, dict) else None
        if not isinstance(raw_jobs, dict):
            return {}

        jobs: dict[str, ScheduleJob] = {}
        for job_id, raw in raw_jobs.items():
            if not isinstance(raw, dict):
                logger.warning(f"Ignoring malformed schedule entry {job_id!r}")
                continue
            try:
                jobs[job_id] = ScheduleJob.model_validate({**raw, "id": job_id})
            except ValidationError as e:
                logger.warning(f"Ignoring invalid schedule entry {job_id!r}: {e}")
        return jobs

    def _write(self, jobs: dict[str, ScheduleJob]):
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"jobs": {job_id: job.to_json_dict() for job_id, job in jobs.items()}}

        tmp_path = self.store_path.with_name(f".{self.store_path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2))
        os.replace(tmp_path, self.store_path)
        logger.debug(f"Saved {len(jobs)} schedule jobs to {self.store_path}")

    def signature(self) -> str | None:
        """Digest of the schedule file as stored on disk, None while it does not exist."""
        try:
            return hashlib.sha256(self.store_path.read_bytes()).hexdigest()
        except FileNotFoundError:
            return None

    def load(self) -> dict[str, ScheduleJob]:
        with self._lock:
            return self._read()

    def get(self, job_id: str) -> ScheduleJob | None:
        return self.load().get(job_id)

    def save_job(self, job: ScheduleJob):
        with self._lock:
            jobs = self._read()
            jobs[job.id] = job
            self._write(jobs)

    def delete_job(self, job_id: str) -> bool:
        with self._lock:
            jobs = self._read()
            if jobs.pop(job_id, None) is None:
                return False
            self._write(jobs)
            return True
