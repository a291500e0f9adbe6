import asyncio
from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest
import requests

from conftest import drain_outbox
from peer_detect.frame_uplink import FrameUplink, encode_frame_b64
from peer_detect.phone import PhoneClient, VideoFileTrack


def _client(on_results=None):
    return PhoneClient("ws://relay.local/ws", track_factory=MagicMock(return_value="camera"), on_results=on_results)


@pytest.mark.asyncio
async def test_laptop_ready_triggers_offer(mock_pc):
    client = _client()

    await client.handle("laptop-ready")

    pc = mock_pc.created[0]
    pc.addTrack.assert_called_once_with("camera")
    assert drain_outbox(client._outbox) == [
        {"event": "offer", "data": {"type": "offer", "sdp": "v=0 offer", "session_id": client.session_id}}
    ]
    assert client.session_id


@pytest.mark.asyncio
async def test_answer_to_replaced_offer_is_dropped(mock_pc):
    client = _client()
    await client.handle("laptop-ready")
    await client.handle("request-track")
    first_offer, second_offer = [m["data"] for m in drain_outbox(client._outbox) if m["event"] == "offer"]
    first, second = mock_pc.created
    second.signalingState = "have-local-offer"

    await client.handle("answer", {"type": "answer", "sdp": "v=0 answer-a", "session_id": first_offer["session_id"]})
    second.setRemoteDescription.assert_not_awaited()

    await client.handle("answer", {"type": "answer", "sdp": "v=0 answer-b", "session_id": second_offer["session_id"]})
    first.close.assert_awaited_once()
    assert first_offer["session_id"] != second_offer["session_id"]
    assert second.setRemoteDescription.await_args.args[0].sdp == "v=0 answer-b"


@pytest.mark.asyncio
async def test_track_request_is_confirmed(mock_pc):
    client = _client()

    await client.handle("request-track")

    assert [m["event"] for m in drain_outbox(client._outbox)] == ["offer", "track-ready"]


@pytest.mark.asyncio
async def test_answer_needs_pending_offer(mock_pc):
    client = _client()
    await client.handle("answer", {"type": "answer", "sdp": "v=0 early"})

    await client.handle("laptop-ready")
    pc = mock_pc.created[0]
    pc.signalingState = "have-local-offer"
    await client.handle("answer", {"type": "answer", "sdp": "v=0 laptop"})
    pc.signalingState = "stable"
    await client.handle("answer", {"type": "answer", "sdp": "v=0 duplicate"})

    assert pc.setRemoteDescription.await_count == 1
    assert pc.setRemoteDescription.await_args.args[0].sdp == "v=0 laptop"


@pytest.mark.asyncio
async def test_detection_results_reach_callback():
    on_results = MagicMock()
    client = _client(on_results)

    await client.handle("detection-results", {"frame_id": 3, "detections": []})

    on_results.assert_called_once_with({"frame_id": 3, "detections": []})
    assert client.results_received == 1


@pytest.mark.asyncio
async def test_stop_camera_announces_once(mock_pc):
    client = _client()
    await client.handle("laptop-ready")
    drain_outbox(client._outbox)

    await client.stop_camera()
    await client.stop_camera()

    mock_pc.created[0].close.assert_awaited_once()
    assert drain_outbox(client._outbox) == [{"event": "phone-stopped", "data": None}]


@pytest.mark.asyncio
async def test_outbox_is_written_as_json_envelopes():
    client = _client()
    ws = MagicMock(send_str=AsyncMock())
    client.send("phone-stopped")
    client.send("device-type", "phone")

    writer = asyncio.ensure_future(client._pump(ws))
    await asyncio.sleep(0)
    writer.cancel()

    sent = [call.args[0] for call in ws.send_str.await_args_list]
    assert sent == ['{"event": "phone-stopped", "data": null}', '{"event": "device-type", "data": "phone"}']


@pytest.mark.asyncio
async def test_blank_track_produces_frames():
    track = VideoFileTrack(None, frame_rate=100.0, width=64, height=48)

    first = await track.recv()
    second = await track.recv()

    assert (first.width, first.height) == (64, 48)
    assert (first.pts, second.pts) == (0, 1)
    track.stop()


def _session(response_json=None, error=None):
    session = MagicMock()
    if error is not None:
        session.post.side_effect = error
    else:
        session.post.return_value.json.return_value = response_json
    return session


def test_uplink_posts_frame():
    session = _session({"accepted": True, "queue_depth": 1})
    uplink = FrameUplink("http://relay.local:3000/", session=session)

    assert uplink.push(np.zeros((8, 8, 3), dtype=np.uint8), capture_ts=2.0) is True

    url = session.post.call_args.args[0]
    body = session.post.call_args.kwargs["json"]
    assert url == "http://relay.local:3000/frames"
    assert body["capture_ts"] == 2000.0
    assert body["frame_b64"]
    assert uplink.stats.accepted == 1


def test_uplink_counts_rejections_and_failures():
    rejected = FrameUplink("http://relay.local", session=_session({"accepted": False}))
    assert rejected.push(np.zeros((8, 8, 3), dtype=np.uint8)) is False
    assert rejected.stats.rejected == 1

    failing = FrameUplink("http://relay.local", session=_session(error=requests.ConnectionError("refused")))
    assert failing.push(np.zeros((8, 8, 3), dtype=np.uint8)) is False
    assert failing.stats.failed == 1


def test_encode_frame_png():
    encoded = encode_frame_b64(np.zeros((4, 4, 3), dtype=np.uint8), image_format="PNG")
    assert encoded.startswith("iVBOR")
