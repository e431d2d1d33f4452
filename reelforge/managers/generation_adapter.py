"""
Client for the external rendering backend (ComfyUI-style HTTP API).

Workflows are node graphs stored in the WorkflowConfig table. A submission merges the
workflow's declared parameter defaults with caller overrides into a copy of the graph
and posts it to /prompt; progress is read back from /history/<job_id>. Image
parameters are uploaded to the backend first when they name a local file.
"""
import asyncio
import copy
import os
import logging
import uuid
from typing import Any, Dict, List, Optional

import requests
from sqlmodel import Session, select

from reelforge import config
from reelforge.database import engine as default_engine, WorkflowConfig, PENDING, PROCESSING, COMPLETED, FAILED
from reelforge.errors import (
    BackendError,
    NodeNotFound,
    NonRetryableBackendError,
    ReelforgeError,
    ResultNotReady,
    WorkflowNotFound,
    is_retryable,
)
from reelforge.schemas import GenerationResult, JobStatus

logger = logging.getLogger(__name__)

# Backend folders an output reference can point into
BACKEND_IMAGE_FOLDERS = ("output", "input", "temp")


class GenerationAdapter:
    def __init__(self, engine=None, base_url: str = None, timeout: int = None):
        self.engine = engine or default_engine
        self.base_url = (base_url or config.COMFYUI_BASE_URL).rstrip("/")
        self.timeout = timeout or config.COMFYUI_TIMEOUT
        self._workflow_cache: Dict[str, WorkflowConfig] = {}

    # ── Workflows ─────────────────────────────────────────────────

    def load_workflows(self) -> List[WorkflowConfig]:
        """Reloads the cache from every active workflow row."""
        with Session(self.engine) as session:
            workflows = session.exec(select(WorkflowConfig).where(WorkflowConfig.is_active == True)).all()  # noqa: E712
        self._workflow_cache = {wf.name: wf for wf in workflows}
        logger.info(f"Loaded {len(workflows)} active workflows")
        return list(workflows)

    def get_workflow(self, workflow_name: str) -> WorkflowConfig:
        cached = self._workflow_cache.get(workflow_name)
        if cached is not None:
            return cached

        with Session(self.engine) as session:
            workflow = session.exec(
                select(WorkflowConfig)
                .where(WorkflowConfig.name == workflow_name)
                .where(WorkflowConfig.is_active == True)  # noqa: E712
            ).first()
        if not workflow:
            raise WorkflowNotFound(workflow_name)

        self._workflow_cache[workflow_name] = workflow
        return workflow

    def invalidate(self, workflow_name: str = None):
        if workflow_name:
            self._workflow_cache.pop(workflow_name, None)
        else:
            self._workflow_cache.clear()

    def accepts(self, workflow_name: str, param_name: str) -> bool:
        workflow = self.get_workflow(workflow_name)
        return any(p["name"] == param_name for p in workflow.parameters or [])

    def build_workflow_graph(self, workflow_name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep copy of the workflow graph with every declared parameter applied.
        Caller values win over declared defaults; parameters with neither are left alone.
        A parameter with a link also rewires the graph, but only when the caller supplied it.
        """
        workflow = self.get_workflow(workflow_name)
        graph = copy.deepcopy(workflow.workflow_json)
        declared = workflow.parameters or []

        for param in declared:
            supplied = params.get(param["name"])
            value = supplied if supplied is not None else param.get("default_value")
            if value is None:
                continue
            self._set_input(workflow_name, graph, param["node_id"], param["field_path"], value)

            link = param.get("link")
            if link and supplied not in (None, ""):
                self._set_input(workflow_name, graph, link["node_id"], link["field_path"], list(link["source"]))

        ignored = sorted(set(k for k, v in params.items() if v is not None) - {p["name"] for p in declared})
        if ignored:
            logger.debug(f"Workflow '{workflow_name}' does not declare {', '.join(ignored)}; not applied")
        return graph

    @staticmethod
    def _set_input(workflow_name: str, graph: Dict[str, Any], node_id: Any, field_path: str, value: Any):
        node_id = str(node_id)
        if node_id not in graph:
            raise NodeNotFound(workflow_name, node_id)

        parts = field_path.split(".")
        current = graph[node_id]
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    # ── HTTP ──────────────────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{path}"
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, lambda: requests.request(method, url, timeout=self.timeout, **kwargs)
            )
        except requests.Timeout as e:
            raise BackendError(f"Backend request timed out after {self.timeout}s: {method} {path}") from e
        except requests.RequestException as e:
            raise BackendError(f"Backend request failed: {method} {path}: {e}") from e

    @staticmethod
    def _json_body(response: requests.Response, path: str) -> Dict[str, Any]:
        # Gateways in front of the backend answer 200 with HTML pages
        try:
            return response.json() or {}
        except ValueError as e:
            raise BackendError(f"Backend returned a non-JSON body for {path}: {response.text[:200]}") from e

    @staticmethod
    def _client_id() -> str:
        return f"reelforge_{uuid.uuid4().hex[:12]}"

    async def _get_history_entry(self, job_id: str) -> Optional[Dict[str, Any]]:
        response = await self._request("GET", f"/history/{job_id}")
        if response.status_code == 404:
            return None
        if not 200 <= response.status_code < 300:
            raise BackendError(f"Backend history error: {response.status_code}", status_code=response.status_code)
        return self._json_body(response, f"/history/{job_id}").get(job_id)

    # ── Image inputs ──────────────────────────────────────────────

    async def upload_image(self, path: str) -> str:
        """Uploads a local image to the backend's input folder and returns the name LoadImage expects."""
        try:
            with open(path, "rb") as fh:
                response = await self._request(
                    "POST", "/upload/image",
                    files={"image": (os.path.basename(path), fh, "image/png")},
                    data={"overwrite": "true"},
                )
        except OSError as e:
            raise BackendError(f"Cannot read image for upload: {path}: {e}") from e
        if not 200 <= response.status_code < 300:
            raise BackendError(f"Image upload failed: {response.status_code} - {response.text[:200]}",
                               status_code=response.status_code)
        body = self._json_body(response, "/upload/image")
        if not body.get("name"):
            raise BackendError("Image upload response carried no name", details={"response": body})
        logger.info(f"Uploaded {path} to backend as {body['name']}")
        return f"{body['subfolder']}/{body['name']}" if body.get("subfolder") else body["name"]

    async def image_input(self, value: str) -> str:
        """
        Turns an image reference into a LoadImage value. Local files are uploaded;
        backend output references ("output/sub/file.png") become annotated names.
        """
        if os.path.isfile(value):
            return await self.upload_image(value)
        folder, _, rest = value.partition("/")
        if folder in BACKEND_IMAGE_FOLDERS and rest:
            return f"{rest} [{folder}]"
        return value

    async def _resolve_image_inputs(self, workflow_name: str, params: Dict[str, Any]) -> Dict[str, Any]:
        workflow = self.get_workflow(workflow_name)
        resolved = dict(params)
        for param in workflow.parameters or []:
            value = params.get(param["name"])
            if param.get("type") == "image" and value:
                resolved[param["name"]] = await self.image_input(value)
        return resolved

    # ── Jobs ──────────────────────────────────────────────────────

    async def submit(self, workflow_name: str, params: Dict[str, Any] = None) -> str:
        """Submits a generation job and returns the backend job id."""
        params = await self._resolve_image_inputs(workflow_name, params or {})
        graph = self.build_workflow_graph(workflow_name, params)
        payload = {"prompt": graph, "client_id": self._client_id()}

        response = await self._request("POST", "/prompt", json=payload)

        if response.status_code in (401, 403):
            raise NonRetryableBackendError(
                f"Backend refused submission: {response.status_code}", status_code=response.status_code
            )
        if not 200 <= response.status_code < 300:
            raise BackendError(
                f"Backend API error: {response.status_code} - {response.text[:500]}",
                status_code=response.status_code,
            )

        result = self._json_body(response, "/prompt")
        if result.get("node_errors"):
            raise NonRetryableBackendError(
                "Backend rejected workflow nodes", details={"node_errors": result["node_errors"]}
            )
        job_id = result.get("prompt_id")
        if not job_id:
            raise BackendError("Backend response carried no prompt_id", details={"response": result})

        logger.info(f"Submitted workflow '{workflow_name}' as job {job_id}")
        return job_id

    @staticmethod
    def _status_from_entry(entry: Optional[Dict[str, Any]]) -> JobStatus:
        if not entry:
            return JobStatus(status=PENDING)
        status = entry.get("status") or {}
        status_str = status.get("status_str") or ""
        if status_str == "success" or status.get("completed"):
            return JobStatus(status=COMPLETED, progress=100.0)
        if status_str == "error":
            messages = [str(m) for m in status.get("messages") or []]
            return JobStatus(status=FAILED, error=", ".join(messages) or "Unknown error")
        return JobStatus(status=PROCESSING)

    async def poll_status(self, job_id: str) -> JobStatus:
        entry = await self._get_history_entry(job_id)
        return self._status_from_entry(entry)

    async def fetch_result(self, job_id: str) -> GenerationResult:
        entry = await self._get_history_entry(job_id)
        status = self._status_from_entry(entry)
        if status.status != COMPLETED:
            raise ResultNotReady(job_id, status.status)

        images, videos = [], []
        for node_output in (entry.get("outputs") or {}).values():
            for item in node_output.get("images") or []:
                images.append(self._output_reference(item))
            for item in node_output.get("videos") or []:
                videos.append(self._output_reference(item))
        return GenerationResult(images=images, videos=videos)

    @staticmethod
    def _output_reference(item: Dict[str, Any]) -> str:
        if item.get("subfolder"):
            return f"{item.get('type', 'output')}/{item['subfolder']}/{item['filename']}"
        return f"{item.get('type', 'output')}/{item['filename']}"

    async def _sleep(self, seconds: float):
        await asyncio.sleep(seconds)

    async def submit_and_await(
        self,
        workflow_name: str,
        params: Dict[str, Any] = None,
        max_retries: int = config.DEFAULT_MAX_RETRIES,
        retry_delay: float = config.DEFAULT_RETRY_DELAY,
        poll_interval: float = config.DEFAULT_POLL_INTERVAL,
    ) -> GenerationResult:
        """
        Submit, poll until terminal, fetch. Transient failures are retried with
        exponential backoff (retry_delay * 2**attempt); permanent ones raise at once.
        """
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                job_id = await self.submit(workflow_name, params)
                while True:
                    await self._sleep(poll_interval)
                    status = await self.poll_status(job_id)
                    if status.status == COMPLETED:
                        return await self.fetch_result(job_id)
                    if status.status == FAILED:
                        raise BackendError(f"Task failed: {status.error or 'Unknown error'}",
                                           details={"job_id": job_id})
            except ReelforgeError as e:
                if not is_retryable(e):
                    raise
                last_error = e
                logger.warning(f"Generation attempt {attempt + 1}/{max_retries} for '{workflow_name}' failed: {e}")

            if attempt < max_retries - 1:
                await self._sleep(retry_delay * (2 ** attempt))

        raise BackendError(
            f"Failed after {max_retries} attempts: {last_error.message if last_error else 'Unknown error'}",
            details={"last_error": str(last_error)},
        )
