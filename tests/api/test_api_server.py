import json
import time

import numpy as np
import pytest
from fastapi.testclient import TestClient

import peer_detect.api_server as app_module
from conftest import FakeBackend
from peer_detect.api_server import create_app, decode_frame
from peer_detect.config_store import load_runtime_config
from peer_detect.detector import ModelConfig, ObjectDetector
from peer_detect.frame_uplink import encode_frame_b64
from peer_detect.pipeline import DetectionPipeline
from peer_detect.signaling import SignalingHub


def _frame_b64():
    return encode_frame_b64(np.zeros((16, 16, 3), dtype=np.uint8), image_format="PNG")


def wait_for_connections(client, count):
    for _ in range(200):
        if client.get("/healthz").json()["connections"] == count:
            return
        time.sleep(0.01)
    raise AssertionError(f"expected {count} relay connections")


@pytest.fixture
def app_state(runtime_config_path, monkeypatch):
    monkeypatch.setattr(app_module, "hub", SignalingHub())
    monkeypatch.setattr(app_module, "pipeline", None)
    monkeypatch.setattr(app_module, "runtime_config", load_runtime_config())
    return app_module


@pytest.fixture
def client(app_state):
    with TestClient(create_app()) as test_client:
        yield test_client


@pytest.fixture
def pipeline(app_state, monkeypatch):
    detector = ObjectDetector(FakeBackend(), ModelConfig(input_shape=(1, 3, 32, 32)))
    detector.load_model("model.onnx")
    instance = DetectionPipeline(detector, max_queue_size=2, on_result=app_module._publish_result)
    monkeypatch.setattr(app_module, "pipeline", instance)
    return instance


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["connections"] == 0
    assert data["pipeline_ready"] is False
    assert "queue_depth" in data


def test_status_without_pipeline(client):
    data = client.get("/status").json()
    assert data["relay"]["connections"] == 0
    assert data["pipeline"] == {"available": False}


def test_frames_unavailable_without_pipeline(client):
    response = client.post("/frames", json={"frame_b64": _frame_b64()})
    assert response.status_code == 503


def test_frames_rejects_bad_payload(client, pipeline):
    response = client.post("/frames", json={"frame_b64": "not-base64!!"})
    assert response.status_code == 400


def test_frames_backpressure(client, pipeline, monkeypatch):
    monkeypatch.setattr(pipeline, "schedule", lambda: None)

    results = [client.post("/frames", json={"frame_b64": _frame_b64()}).json() for _ in range(3)]

    assert [r["accepted"] for r in results] == [True, True, False]
    assert results[-1]["queue_depth"] == 2
    assert client.get("/status").json()["pipeline"]["queue"]["dropped"] == 1


def test_frame_results_are_published(client, pipeline):
    with client.websocket_connect("/ws") as viewer:
        wait_for_connections(client, 1)

        response = client.post("/frames", json={"frame_b64": _frame_b64(), "frame_id": 42, "capture_ts": 1500})
        assert response.json()["accepted"] is True

        message = viewer.receive_json()

    assert message["event"] == "detection-results"
    assert message["data"]["frame_id"] == 42
    assert message["data"]["capture_ts"] == 1500
    assert [d["label"] for d in message["data"]["detections"]] == ["bicycle"]


def test_config_roundtrip(client, runtime_config_path):
    initial = client.get("/config").json()
    assert initial["max_queue_size"] == 3
    assert initial["channel_order"] == "RGB"

    response = client.post("/config", json={"score_threshold": 1.7, "max_queue_size": 0, "channel_order": "bgr"})
    assert response.status_code == 200
    updated = response.json()
    assert updated["score_threshold"] == 1.0
    assert updated["max_queue_size"] == 1
    assert updated["channel_order"] == "BGR"

    with open(runtime_config_path, "r", encoding="utf-8") as fp:
        saved = json.load(fp)
    assert saved["score_threshold"] == 1.0


def test_config_ignores_invalid_values(client):
    response = client.post("/config", json={"channel_order": "YUV"})
    assert response.json()["channel_order"] == "RGB"


def test_config_rejects_non_positive_scale(client):
    response = client.post("/config", json={"standard_scale": 0})
    assert response.status_code == 400


def test_config_updates_pipeline_threshold(client, pipeline):
    client.post("/config", json={"score_threshold": 0.7})
    assert pipeline.detector.config.score_threshold == pytest.approx(0.7)


def test_config_reaches_live_pipeline(client, pipeline):
    client.post("/config", json={"max_queue_size": 1, "channel_order": "BGR", "input_width": 640})

    assert client.get("/status").json()["pipeline"]["queue"]["max_size"] == 1
    config = pipeline.detector.config
    assert config.channel_order == "BGR"
    assert config.input_shape == (1, 3, 32, 32)
    assert config.input_name == "data"
    assert config.output_names == ["scores", "boxes"]

    assert pipeline.enqueue_frame(np.zeros((8, 8, 3), dtype=np.uint8)) is True
    assert pipeline.enqueue_frame(np.zeros((8, 8, 3), dtype=np.uint8)) is False


def test_security_headers_only_with_tls(app_state):
    with TestClient(create_app(tls=True)) as secure:
        headers = secure.get("/healthz").headers
        assert headers["strict-transport-security"].startswith("max-age=31536000")
        assert headers["x-frame-options"] == "SAMEORIGIN"
    with TestClient(create_app()) as plain:
        assert "strict-transport-security" not in plain.get("/healthz").headers


def test_decode_frame_rejects_non_images():
    with pytest.raises(ValueError):
        decode_frame("aGVsbG8=")


def test_relay_over_websocket(client):
    offer = {"type": "offer", "sdp": "v=0 phone"}
    answer = {"type": "answer", "sdp": "v=0 laptop"}
    with client.websocket_connect("/ws") as phone, client.websocket_connect("/ws") as laptop, client.websocket_connect(
        "/ws"
    ) as bystander:
        wait_for_connections(client, 3)

        laptop.send_json({"event": "device-type", "data": "laptop"})
        phone.send_json({"event": "device-type", "data": "phone"})
        assert laptop.receive_json() == {"event": "phone-connected", "data": None}
        assert bystander.receive_json() == {"event": "phone-connected", "data": None}
        assert phone.receive_json() == {"event": "laptop-ready", "data": None}

        phone.send_text("garbage")
        phone.send_bytes(b"\x00\x01")
        phone.send_json({"event": "offer", "data": offer})
        assert laptop.receive_json() == {"event": "offer", "data": offer}
        assert bystander.receive_json() == {"event": "offer", "data": offer}

        laptop.send_json({"event": "answer", "data": answer})
        # the phone never sees its own offer
        assert phone.receive_json() == {"event": "answer", "data": answer}
        assert bystander.receive_json() == {"event": "answer", "data": answer}

        status = client.get("/status").json()["relay"]
        assert status == {"connections": 3, "phones": 1, "laptops": 1, "unknown": 1}


def test_phone_disconnect_is_announced(client):
    with client.websocket_connect("/ws") as laptop:
        with client.websocket_connect("/ws") as phone:
            wait_for_connections(client, 2)
            phone.send_json({"event": "device-type", "data": "phone"})
            assert laptop.receive_json()["event"] == "phone-connected"
            assert phone.receive_json()["event"] == "laptop-ready"

        assert laptop.receive_json() == {"event": "phone-disconnected", "data": None}
        wait_for_connections(client, 1)


def test_laptop_disconnect_is_silent(client):
    with client.websocket_connect("/ws") as phone:
        with client.websocket_connect("/ws") as laptop:
            wait_for_connections(client, 2)
            laptop.send_json({"event": "device-type", "data": "laptop"})
        wait_for_connections(client, 1)

        phone.send_json({"event": "phone-ready"})
        assert phone.receive_json() == {"event": "laptop-ready", "data": None}
