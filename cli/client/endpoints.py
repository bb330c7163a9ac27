"""API Endpoint Wrappers for the Jobflow admin API"""

from typing import Any

from ..utils.config_manager import config
from .base import APIClient, JobflowClientError

__all__ = ["JobflowClient", "JobflowClientError"]


class JobflowClient:
    """High-level client with one method per admin endpoint"""

    def __init__(
        self,
        base_url: str | None = None,
        headers: dict[str, str] | None = None,
        **client_kwargs: Any,
    ):
        api_config = config.load_config().get("api", {})
        self.api = APIClient(
            base_url=base_url or api_config.get("base_url", "http://localhost:8000"),
            timeout=int(api_config.get("timeout", 30)),
            headers=headers or api_config.get("headers", {}),
            **client_kwargs,
        )

    def __enter__(self):
        self.api.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.api.__exit__(exc_type, exc_val, exc_tb)

    def health_check(self) -> dict[str, Any]:
        return self.api.get("/healthz")

    # Runs
    def list_runs(
        self,
        job_name: str | None = None,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if job_name:
            params["job_name"] = job_name
        if status:
            params["status"] = status
        return self.api.get("/runs", params)

    def get_run(self, run_id: str) -> dict[str, Any]:
        return self.api.get(f"/runs/{run_id}")

    def run_stats(self) -> dict[str, Any]:
        return self.api.get("/runs/stats/overview")

    def purge_runs(
        self, older_than_days: int | None = None, job_name: str | None = None
    ) -> dict[str, Any]:
        return self.api.post(
            "/runs/purge",
            {"older_than_days": older_than_days, "job_name": job_name},
        )

    def unlock_run(self, run_id: str) -> dict[str, Any]:
        return self.api.post(f"/runs/{run_id}/unlock")

    # Staged jobs
    def list_staged(self, limit: int = 50, offset: int = 0) -> dict[str, Any]:
        return self.api.get("/staged", {"limit": limit, "offset": offset})

    def sweep_staged(self, older_than_s: int | None = None) -> dict[str, Any]:
        return self.api.post("/staged/sweep", {"older_than_s": older_than_s})

    # Queue
    def list_jobs(
        self,
        status: list[str] | None = None,
        job_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status
        if job_name:
            params["job_name"] = job_name
        return self.api.get("/jobs", params)

    def get_job(self, job_id: str) -> dict[str, Any]:
        return self.api.get(f"/jobs/{job_id}")

    def job_stats(self) -> dict[str, Any]:
        return self.api.get("/jobs/stats/overview")

    def retry_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/retry")

    def cancel_job(self, job_id: str) -> dict[str, Any]:
        return self.api.post(f"/jobs/{job_id}/cancel")
