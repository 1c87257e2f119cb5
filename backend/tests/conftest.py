"""
conftest.py — Shared pytest fixtures for the estimate pipeline test suite.

No network access is made anywhere in this suite. Forge is replaced by
FakeForge, an in-process fake of the REST endpoints the pipeline calls,
mounted on an httpx.MockTransport. AI providers are replaced by patching
litellm.acompletion in the individual tests.

Import-path bootstrapping:
    The ``backend/`` directory is inserted into sys.path so that all
    ``app.*`` imports resolve correctly regardless of where pytest is invoked.
"""

import sys
import os
import json
import re
import pytest

# ---------------------------------------------------------------------------
# Ensure ``backend/`` is on the import path before any app imports occur.
# ---------------------------------------------------------------------------
_BACKEND_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND_DIR not in sys.path:
    sys.path.insert(0, _BACKEND_DIR)

import httpx  # noqa: E402

from app.config import AISettings, ForgeSettings, PipelineSettings, Settings  # noqa: E402
from app.services.perf_monitor import tracker as perf_tracker  # noqa: E402

FORGE_BASE = "https://forge.test"
S3_BASE = "https://s3.test"
BUCKET = "test-bucket"


# ---------------------------------------------------------------------------
# Sample translated model
# ---------------------------------------------------------------------------

SAMPLE_TREE = {
    "data": {
        "type": "objects",
        "objects": [
            {
                "objectid": 1,
                "name": "Model",
                "objects": [
                    {
                        "objectid": 2,
                        "name": "Walls",
                        "objects": [
                            {
                                "objectid": 3,
                                "name": "Basic Wall",
                                "objects": [{"objectid": 10, "name": "Basic Wall [1001]"}],
                            }
                        ],
                    },
                    {"objectid": 4, "name": "Doors", "objects": [{"objectid": 11, "name": "Single Door [2001]"}]},
                    {"objectid": 5, "name": "Floors", "objects": [{"objectid": 12, "name": "Floor [3001]"}]},
                    {"objectid": 6, "name": "Generic Models", "objects": [{"objectid": 13, "name": "Mystery Object"}]},
                ],
            }
        ],
    }
}

SAMPLE_PROPERTIES = {
    "data": {
        "type": "properties",
        "collection": [
            {"objectid": 3, "name": "Basic Wall", "properties": {}},
            {
                "objectid": 10,
                "name": "Basic Wall [1001]",
                "properties": {
                    "__category__": {"Category": "Revit Walls"},
                    "Dimensions": {"Area": "45.5 m^2", "Volume": "9.1 m^3", "Length": "15000 mm"},
                },
            },
            {
                "objectid": 11,
                "name": "Single Door [2001]",
                "properties": {
                    "__category__": {"Category": "Revit Doors"},
                    "Dimensions": {"Width": "900 mm"},
                },
            },
            {
                "objectid": 12,
                "name": "Floor [3001]",
                "properties": {
                    "__category__": {"Category": "Revit Floors"},
                    "Dimensions": {"Area": "120 m^2", "Volume": "24 m^3"},
                },
            },
            {
                "objectid": 13,
                "name": "Mystery Object",
                "properties": {"Dimensions": {"Volume": "2.5 m^3"}},
            },
        ],
    }
}

# 45.5 m² walls @180 + 1 door @850 + 120 m² floor @165 + 1 unclassified @165
SAMPLE_TOTAL = 8190.0 + 850.0 + 19800.0 + 165.0

MANIFEST_PENDING = {"status": "pending", "progress": "0% complete", "derivatives": []}
MANIFEST_RUNNING = {"status": "inprogress", "progress": "45% complete", "derivatives": [{"status": "inprogress"}]}
MANIFEST_SUCCESS = {"status": "success", "progress": "complete", "derivatives": [{"status": "success"}]}
MANIFEST_FAILED = {
    "status": "failed",
    "progress": "complete",
    "derivatives": [{"status": "failed"}],
    "messages": [{"type": "error", "code": "TranslationWorker-InternalFailure"}],
}


class FakeForge:
    """
    In-process fake of the Forge endpoints the pipeline uses.

    Knobs:
      token_status / job_status        : HTTP status for those endpoints
      job_result                       : "created" | "success"
      bucket_exists                    : details GET answers 200 instead of 404
      manifests                        : queue of manifests (last one repeats);
                                         an int entry answers with that status,
                                         a str/bytes entry is sent as a raw body
      properties_status                : 200 or 202 ("still preparing")
      fail_part                        : 1-based part number whose S3 PUT fails
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.token_calls = 0
        self.token_status = 200
        self.expires_in = 3599
        self.bucket_exists = True
        self.bucket_created = False
        self.job_status = 200
        self.job_result = "created"
        self.manifests: list = [MANIFEST_PENDING]
        self.properties_status = 200
        self.tree = SAMPLE_TREE
        self.properties = SAMPLE_PROPERTIES
        self.fail_part = None
        self.parts: dict[int, bytes] = {}
        self.objects: dict[str, dict[int, bytes]] = {}
        self.signed_url_requests: list[dict] = []
        self.completed: list[dict] = []
        self.jobs: list[dict] = []
        self.transport = httpx.MockTransport(self.handle)

    # -- helpers -----------------------------------------------------------

    @property
    def network_calls(self) -> int:
        return len(self.requests)

    def paths(self) -> list[str]:
        return [f"{r.method} {r.url.path}" for r in self.requests]

    @property
    def uploaded_bytes(self) -> bytes:
        return b"".join(self.parts[n] for n in sorted(self.parts))

    def stored_object(self, object_key: str) -> bytes:
        parts = self.objects.get(object_key, {})
        return b"".join(parts[n] for n in sorted(parts))

    # -- dispatch ----------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method

        if request.url.host == "s3.test" and method == "PUT":
            part_number = int(path.rsplit("/", 1)[-1])
            if self.fail_part == part_number:
                return httpx.Response(500)
            self.parts[part_number] = request.content
            object_key = path.split("/part/")[0].lstrip("/")
            self.objects.setdefault(object_key, {})[part_number] = request.content
            return httpx.Response(200)

        if path == "/authentication/v2/token" and method == "POST":
            self.token_calls += 1
            if self.token_status != 200:
                return httpx.Response(self.token_status, json={"error_description": "invalid client"})
            return httpx.Response(
                200,
                json={
                    "access_token": f"token-{self.token_calls}",
                    "token_type": "Bearer",
                    "expires_in": self.expires_in,
                },
            )

        if re.fullmatch(r"/oss/v2/buckets/[^/]+/details", path):
            if self.bucket_exists:
                return httpx.Response(200, json={"bucketKey": BUCKET})
            return httpx.Response(404, json={"reason": "Bucket not found"})

        if path == "/oss/v2/buckets" and method == "POST":
            self.bucket_exists = True
            self.bucket_created = True
            return httpx.Response(200, json=json.loads(request.content))

        match = re.fullmatch(r"/oss/v2/buckets/[^/]+/objects/([^/]+)/signeds3upload", path)
        if match:
            key = match.group(1)
            if method == "GET":
                parts = int(request.url.params["parts"])
                first = int(request.url.params["firstPart"])
                self.signed_url_requests.append({"parts": parts, "firstPart": first})
                return httpx.Response(
                    200,
                    json={
                        "uploadKey": "upload-key-1",
                        "urls": [f"{S3_BASE}/{key}/part/{n}" for n in range(first, first + parts)],
                    },
                )
            body = json.loads(request.content)
            self.completed.append(body)
            return httpx.Response(200, json={"objectKey": key, "size": len(self.uploaded_bytes)})

        if path == "/modelderivative/v2/designdata/job" and method == "POST":
            body = json.loads(request.content)
            self.jobs.append({"body": body, "headers": dict(request.headers)})
            if self.job_status >= 400:
                return httpx.Response(self.job_status, json={"diagnostic": "Unsupported source format"})
            return httpx.Response(
                self.job_status, json={"result": self.job_result, "urn": body["input"]["urn"]}
            )

        if path.endswith("/manifest"):
            entry = self.manifests.pop(0) if len(self.manifests) > 1 else self.manifests[0]
            if isinstance(entry, int):
                return httpx.Response(entry)
            if isinstance(entry, (str, bytes)):
                return httpx.Response(200, content=entry)
            return httpx.Response(200, json=entry)

        if path.endswith("/properties"):
            if self.properties_status != 200:
                return httpx.Response(self.properties_status, json={"result": "success"})
            return httpx.Response(200, json=self.properties)

        if re.fullmatch(r"/modelderivative/v2/designdata/[^/]+/metadata", path):
            return httpx.Response(
                200,
                json={
                    "data": {
                        "type": "metadata",
                        "metadata": [
                            {"name": "Sheet", "role": "2d", "guid": "guid-2d"},
                            {"name": "{3D}", "role": "3d", "guid": "guid-3d"},
                        ],
                    }
                },
            )

        if re.fullmatch(r"/modelderivative/v2/designdata/[^/]+/metadata/[^/]+", path):
            return httpx.Response(200, json=self.tree)

        return httpx.Response(404, json={"reason": f"no fake route for {method} {path}"})


class FakeClock:
    """Settable epoch clock for token-expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Settings fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def forge_settings():
    return ForgeSettings(
        client_id="test-client",
        client_secret="test-secret",
        base_url=FORGE_BASE,
        bucket_key=BUCKET,
    )


@pytest.fixture
def pipeline_settings():
    """Tiny parts so multipart batching is exercised with a few bytes."""
    return PipelineSettings(chunk_bytes=4, signed_url_batch=2, poll_interval_seconds=30.0)


@pytest.fixture
def ai_settings():
    return AISettings(xai_api_key="xai-test-key", openai_api_key="openai-test-key", timeout_seconds=5.0)


@pytest.fixture
def settings(forge_settings, ai_settings):
    return Settings(
        forge=forge_settings,
        ai=ai_settings,
        pipeline=PipelineSettings(),
        log_level="WARNING",
        json_logs=False,
    )


# ---------------------------------------------------------------------------
# Transport fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_forge():
    return FakeForge()


@pytest.fixture
def http_client(fake_forge):
    return httpx.AsyncClient(transport=fake_forge.transport)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_provider(forge_settings, http_client, clock):
    from app.services.forge_auth import ForgeTokenProvider
    return ForgeTokenProvider(forge_settings, http_client, clock=clock)


@pytest.fixture(autouse=True)
def reset_perf_tracker():
    perf_tracker.reset()
    yield
    perf_tracker.reset()
