#!/usr/bin/env python3
"""
HTTP surface: sync and async analysis, status polling, error documents and the
analytics endpoints, served by FastAPI's TestClient against a scripted model.
"""
import sys
import tempfile
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from fastapi.testclient import TestClient

from matworker.main import create_app
from matworker.pipeline import AnalysisPipeline
from matworker.settings import settings
from matworker.storage import LocalAnalysisStore
from test_pipeline import FakeInference, distinct_frames


def make_client(tmp: str) -> TestClient:
    cfg = settings.model_copy(update={"LOG_JSON": False})
    store = LocalAnalysisStore(tmp)
    pipeline = AnalysisPipeline(inference_factory=FakeInference, store=store, settings=cfg)
    return TestClient(create_app(pipeline=pipeline, store=store, settings=cfg))


def poll(client: TestClient, path: str, done, timeout: float = 8.0):
    deadline = time.time() + timeout
    body = None
    while time.time() < deadline:
        body = client.get(path).json()
        if done(body):
            return body
        time.sleep(0.05)
    raise AssertionError(f"timed out polling {path}: {body}")


def test_healthz_and_request_id():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert response.headers["X-Request-ID"] == "req-123"
        assert client.get("/healthz").headers["X-Request-ID"]
    print("✅ Test passed: health check echoes the request id")


def test_sync_analysis():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.post("/analyze", json={"frames": distinct_frames(12), "matchStyle": "folkstyle"})

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["mode"] == "athlete"
        assert body["overall_score"] == 67
        assert len(body["frame_annotations"]) == 12
        assert body["frame_annotations"][5]["is_key_moment"] is True
        assert body["match_stats"]["takedowns_scored"] == 1
        assert isinstance(body["quality_flags"], list)
    print("✅ Test passed: synchronous analysis returns the scored document")


def test_quick_analysis_endpoint():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.post("/analyze/quick", json={"frames": distinct_frames(30)})

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["analysis_profile"] == "quick"
        assert body["frames_analyzed"] == 8
        assert len(body["frame_annotations"]) == 8

        full = client.post("/analyze", json={"frames": distinct_frames(12)}).json()
        assert full["analysis_profile"] == "full"
    print("✅ Test passed: /analyze/quick scores a sampled clip")


def test_error_documents():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        empty = client.post("/analyze", json={"frames": ["", "   "]})
        assert empty.status_code == 400
        assert empty.json()["code"] == "NO_FRAMES"
        assert empty.json()["status"] == "analysis_failed"
        assert empty.json()["can_retry"] is False

        bad_style = client.post("/analyze", json={"frames": ["abc"], "match_style": "sumo"})
        assert bad_style.status_code == 400
        assert bad_style.json()["code"] == "INVALID_INPUT"
        assert bad_style.json()["reasons"]

        not_json = client.post("/analyze", content=b"{nope", headers={"Content-Type": "application/json"})
        assert not_json.status_code == 400
        assert not_json.json()["code"] == "INVALID_INPUT"
    print("✅ Test passed: input errors map to structured 400 documents")


def test_async_analysis_and_status():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.post("/analyze?async=true", json={"frames": distinct_frames(12)})

        assert response.status_code == 202, response.text
        job_id = response.json()["job_id"]

        doc = poll(client, f"/analyze/status?job_id={job_id}", lambda b: b["status"] != "processing")
        assert doc["status"] == "complete", doc
        assert doc["result"]["overall_score"] == 67

        job = client.get(f"/jobs/{job_id}").json()
        assert job["stage"] == "persisted"
        assert job["pct"] == 100.0
        assert "perception" in [s["stage"] for s in job["stages"]]

        assert client.get("/analyze/status").status_code == 400
        assert client.get("/analyze/status?job_id=unknown").status_code == 404
        assert client.get("/jobs/unknown").status_code == 404
    print("✅ Test passed: async jobs can be polled to completion")


def test_async_flag_in_body():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.post("/analyze", json={"frames": distinct_frames(12), "async": True})

        assert response.status_code == 202
        assert response.json()["status"] == "processing"
    print("✅ Test passed: async mode can be requested in the body")


def test_athlete_progress_after_saved_analysis():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        response = client.post("/analyze", json={"frames": distinct_frames(12), "athleteId": "ath-7"})
        assert response.status_code == 200

        progress = poll(client, "/athletes/ath-7/progress", lambda b: b["report"]["match_count"] == 1)
        assert progress["report"]["trends"]["overall"]["scores"] == [67]
        assert "first_analysis" in [b["key"] for b in progress["badges"]]
    print("✅ Test passed: saved analyses feed the athlete progress view")


def test_analytics_endpoints():
    with tempfile.TemporaryDirectory() as tmp, make_client(tmp) as client:
        history = [
            {"id": f"a{i}", "created_at": f"2026-0{i + 1}-01", "overall_score": s, "standing": s, "top": s, "bottom": s}
            for i, s in enumerate([60, 65, 70])
        ]
        trends = client.post("/analytics/trends", json={"athlete_id": "ath-1", "history": history}).json()
        assert trends["report"]["trends"]["overall"]["direction"] == "improving"
        assert len(trends["rows"]) == 12

        pairs = [
            {"analysis_id": f"a{i}", "coach_name": "Lee", "ai": {"overall": s}, "coach": {"overall": s + 2}}
            for i, s in enumerate([60, 70, 80])
        ]
        few = client.post("/analytics/correlation", json={"pairs": pairs[:2]}).json()
        assert few["total_validations"] == 2
        assert "Need at least 3" in few["message"]
        report = client.post("/analytics/correlation", json={"pairs": pairs}).json()
        assert report["agreement_rate"] == 100

        comparison = {
            "ai": {
                "analysis_id": "a1",
                "overall_score": 72,
                "position_scores": {"standing": 70, "top": 75, "bottom": 70},
                "confidence": 0.7,
            },
            "coach": {
                "analysis_id": "a1",
                "overall_score": 70,
                "position_scores": {"standing": 68, "top": 72, "bottom": 70},
            },
        }
        calibration = client.post("/analytics/calibration", json={"comparisons": [comparison]}).json()
        assert calibration["metrics"][0]["overall_mae"] == 2
        assert calibration["summary"]["total_comparisons"] == 1
    print("✅ Test passed: analytics endpoints")


if __name__ == "__main__":
    try:
        test_healthz_and_request_id()
        test_sync_analysis()
        test_quick_analysis_endpoint()
        test_error_documents()
        test_async_analysis_and_status()
        test_async_flag_in_body()
        test_athlete_progress_after_saved_analysis()
        test_analytics_endpoints()
        print("\n🎉 ALL API TESTS PASSED!")
        sys.exit(0)
    except AssertionError as e:
        print(f"\n❌ TEST FAILED: {e}")
        sys.exit(1)
