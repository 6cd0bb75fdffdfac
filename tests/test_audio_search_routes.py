"""
Tests for api/routes/audio_search.py and the app-level endpoints.

Covers:
    POST /audio-search/search  — plain search, request → config mapping
    POST /audio-search/guided  — refinement, explanations, labels
    GET  /health, GET /metrics

Strategy:
    - TestClient (synchronous) against the real FastAPI app.
    - Engine patched via patch("api.routes.audio_search._get_engine"):
      happy paths use a real AudioSearchEngine whose loader returns the
      synthetic track; error paths use a MagicMock raising the exception.
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from api.main import app
from core.audio_search.cancellation import SearchCancelledError
from core.audio_search.types import FrameSeries
from ingestion.search_engine import AudioSearchEngine

client = TestClient(app)

_ENGINE_PATH = "api.routes.audio_search._get_engine"


def _payload(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "file_path": "/tracks/demo.npz",
        "query": {"start": 10.0, "end": 10.5},
        "hop_sec": 0.02,
    }
    body.update(overrides)
    return body


def _labels(*items: tuple[float, str]) -> list[dict[str, Any]]:
    return [{"start": s, "end": s + 0.5, "status": status} for s, status in items]


@pytest.fixture()
def real_engine(track_frames: FrameSeries) -> AudioSearchEngine:
    return AudioSearchEngine(loader=lambda path: track_frames)


def _mock_engine_raising(exc: Exception) -> MagicMock:
    engine = MagicMock()
    engine.search.side_effect = exc
    engine.guided_search.side_effect = exc
    return engine


# ---------------------------------------------------------------------------
# POST /audio-search/search
# ---------------------------------------------------------------------------


class TestSearchEndpoint:
    def test_returns_similarity_curve(self, real_engine: AudioSearchEngine) -> None:
        with patch(_ENGINE_PATH, return_value=real_engine):
            resp = client.post("/audio-search/search", json=_payload())
        assert resp.status_code == 200
        data = resp.json()
        assert data["curve_kind"] == "similarity"
        assert data["model"]["kind"] == "baseline"
        assert len(data["times"]) == len(data["scores"])
        assert any(abs(c["time"] - 30.0) < 0.07 for c in data["candidates"])
        assert data["skipped_windows"] > 0
        assert set(data["timings_ms"]) == {"feature_prep", "scan", "model", "total"}

    def test_maps_request_to_config(self) -> None:
        engine = MagicMock()
        engine.search.side_effect = SearchCancelledError()
        with patch(_ENGINE_PATH, return_value=engine):
            client.post(
                "/audio-search/search",
                json=_payload(
                    hop_sec=None,
                    precision="coarse",
                    threshold=0.6,
                    skip_query=False,
                    weights={"mel": 2.0, "transient": 0.0, "mfcc": 1.0},
                    softmax_similarity=True,
                ),
            )
        path, query, config = engine.search.call_args.args
        assert path == "/tracks/demo.npz"
        assert (query.start, query.end) == (10.0, 10.5)
        assert config.hop_sec == pytest.approx(0.05)
        assert config.threshold == 0.6
        assert config.skip_window_overlap is None
        assert config.weights.mel == 2.0
        assert config.weights.transient == 0.0
        assert config.softmax_similarity is True

    def test_skip_query_sets_skip_window(self) -> None:
        engine = MagicMock()
        engine.search.side_effect = SearchCancelledError()
        with patch(_ENGINE_PATH, return_value=engine):
            client.post("/audio-search/search", json=_payload())
        config = engine.search.call_args.args[2]
        assert config.skip_window_overlap is not None
        assert config.skip_window_overlap.start == 10.0

    def test_missing_file_returns_422(self) -> None:
        engine = _mock_engine_raising(FileNotFoundError("Frame archive not found: /x.npz"))
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/search", json=_payload())
        assert resp.status_code == 422
        assert "not found" in resp.json()["detail"]

    def test_invalid_archive_returns_422(self) -> None:
        engine = _mock_engine_raising(ValueError("missing arrays: ['onset']"))
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/search", json=_payload())
        assert resp.status_code == 422

    def test_cancelled_returns_409(self) -> None:
        engine = _mock_engine_raising(SearchCancelledError())
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/search", json=_payload())
        assert resp.status_code == 409

    def test_decode_failure_returns_500(self) -> None:
        engine = _mock_engine_raising(RuntimeError("Failed to decode frame archive"))
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/search", json=_payload())
        assert resp.status_code == 500
        assert "decode" in resp.json()["detail"]

    def test_schema_validation(self) -> None:
        resp = client.post("/audio-search/search", json={"file_path": "/x.npz"})
        assert resp.status_code == 422
        resp = client.post(
            "/audio-search/search", json=_payload(query={"start": -1.0, "end": 0.5})
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# POST /audio-search/guided
# ---------------------------------------------------------------------------


class TestGuidedEndpoint:
    def test_baseline_guided(self, real_engine: AudioSearchEngine) -> None:
        with patch(_ENGINE_PATH, return_value=real_engine):
            resp = client.post("/audio-search/guided", json=_payload())
        assert resp.status_code == 200
        data = resp.json()
        assert data["curve_kind"] == "similarity"
        assert data["refinement_fallback"] is False
        assert data["model"]["weight_norms"] is None

    def test_logistic_refinement_with_explanations(self, real_engine: AudioSearchEngine) -> None:
        body = _payload(
            threshold=0.5,
            refine=True,
            labels=_labels((20.0, "accepted"), (30.0, "accepted"), (50.0, "rejected")),
        )
        with patch(_ENGINE_PATH, return_value=real_engine):
            resp = client.post("/audio-search/guided", json=body)
        assert resp.status_code == 200
        data = resp.json()
        assert data["curve_kind"] == "confidence"
        assert data["model"]["kind"] == "logistic"
        assert data["model"]["positives"] == 3
        assert data["model"]["negatives"] == 1
        assert data["model"]["training"]["iterations"] <= 80
        assert "mel" in data["model"]["weight_norms"]
        assert data["candidates"]
        for c in data["candidates"]:
            assert {"logit", "bias", "mel", "onset"} <= set(c["explain"])

    def test_prototype_refinement(self, real_engine: AudioSearchEngine) -> None:
        body = _payload(refine=True, labels=_labels((20.0, "accepted"), (30.0, "accepted")))
        with patch(_ENGINE_PATH, return_value=real_engine):
            resp = client.post("/audio-search/guided", json=body)
        data = resp.json()
        assert data["model"]["kind"] == "prototype"
        assert all("explain" not in c for c in data["candidates"])

    def test_maps_guided_options(self) -> None:
        engine = MagicMock()
        engine.guided_search.side_effect = SearchCancelledError()
        body = _payload(
            local_contrast=False,
            background_scale=5.0,
            refine=True,
            include_query_as_positive=False,
            labels=_labels((20.0, "accepted"), (50.0, "rejected")),
        )
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/guided", json=body)
        assert resp.status_code == 409
        config = engine.guided_search.call_args.args[2]
        assert config.local_contrast.enabled is False
        assert config.local_contrast.background_scale == 5.0
        assert config.refinement.enabled is True
        assert config.refinement.include_query_as_positive is False
        assert [lb.status for lb in config.refinement.labels] == ["accepted", "rejected"]
        assert config.refinement.labels[0].source == "manual"

    def test_invalid_label_status_rejected(self) -> None:
        body = _payload(labels=[{"start": 1.0, "end": 1.5, "status": "maybe"}])
        resp = client.post("/audio-search/guided", json=body)
        assert resp.status_code == 422

    def test_unexpected_error_returns_500(self) -> None:
        engine = _mock_engine_raising(MemoryError("out of memory"))
        with patch(_ENGINE_PATH, return_value=engine):
            resp = client.post("/audio-search/guided", json=_payload())
        assert resp.status_code == 500


# ---------------------------------------------------------------------------
# App-level endpoints
# ---------------------------------------------------------------------------


class TestAppEndpoints:
    def test_health(self) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok"}

    def test_metrics_after_search(self, real_engine: AudioSearchEngine) -> None:
        with patch(_ENGINE_PATH, return_value=real_engine):
            client.post("/audio-search/search", json=_payload())
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "audio_search_requests_total" in resp.text
