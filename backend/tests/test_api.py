from __future__ import annotations

from collections.abc import Iterator

import pytest
from fastapi.testclient import TestClient

from app.main import app


@pytest.fixture
def client(pipeline_factory) -> Iterator[TestClient]:
    app.state.pipeline = pipeline_factory()
    with TestClient(app) as test_client:
        yield test_client
    app.state.pipeline = None


def _upload(client: TestClient, page_id: str, data: bytes):
    return client.put(f"/v1/pages/{page_id}/image", files={"file": ("page.png", data, "image/png")})


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_upload_then_read_page(client, png):
    data = png(400, 600)

    resp = _upload(client, "ch1-p01", data)

    assert resp.status_code == 200
    body = resp.json()
    assert (body["width"], body["height"]) == (400, 600)
    assert body["state"] == "unprocessed"
    assert client.get("/v1/pages/ch1-p01").json()["image_hash"] == body["image_hash"]
    image = client.get("/v1/pages/ch1-p01/image")
    assert image.status_code == 200
    assert image.content == data


def test_upload_rejects_garbage(client):
    resp = _upload(client, "p1", b"not an image")

    assert resp.status_code == 400


def test_unknown_page_is_404(client):
    assert client.get("/v1/pages/missing").status_code == 404
    resp = client.post("/v1/pages/missing/translate", json={"source_lang": "ja"})
    assert resp.status_code == 404


def test_translate_returns_bubbles_in_viewport_space(client, png, ocr_engine, mt_engine):
    _upload(client, "p1", png(400, 600))

    resp = client.post(
        "/v1/pages/p1/translate",
        json={"source_lang": "ja", "target_lang": "en", "quality": "fast", "viewport": {"width": 200, "height": 300}},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ready"
    assert body["quality"] == "fast"
    assert [b["display_text"] for b in body["bubbles"]] == ["Hello", "What happened?"]
    assert body["bubbles"][0]["render_box"] == {"x0": 5.0, "y0": 5.0, "x1": 55.0, "y1": 30.0}
    assert client.get("/v1/pages/p1").json()["state"] == "ready"
    assert mt_engine.backends[0].tier == "fast"


def test_translate_rejects_unknown_quality(client, png):
    _upload(client, "p1", png())

    resp = client.post("/v1/pages/p1/translate", json={"source_lang": "ja", "quality": "ultra"})

    assert resp.status_code == 422


def test_pipeline_failure_is_a_failed_outcome_not_an_error(client, png, ocr_engine):
    ocr_engine.error = RuntimeError("engine down")
    _upload(client, "p1", png())

    resp = client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "failed"
    assert body["error_code"] == "ocr_unavailable"
    assert body["bubbles"] == []


def test_invalidate_forces_recompute(client, png, ocr_engine):
    _upload(client, "p1", png())
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})
    assert ocr_engine.calls == 1

    assert client.delete("/v1/pages/p1/translations").status_code == 204
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})

    assert ocr_engine.calls == 2


def test_replacing_image_recomputes(client, png, ocr_engine):
    _upload(client, "p1", png())
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})

    _upload(client, "p1", png(color=(0, 0, 0)))
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})

    assert ocr_engine.calls == 2


def test_inline_prefetch(client, png):
    _upload(client, "p1", png())

    resp = client.post("/v1/pages/p1/prefetch", json={"source_lang": "ja"})

    assert resp.status_code == 200
    assert resp.json()["backend"] == "inline"
    assert resp.json()["status"] == "queued"


def test_delete_page(client, png):
    _upload(client, "p1", png())

    assert client.delete("/v1/pages/p1").status_code == 204
    assert client.get("/v1/pages/p1").status_code == 404
    assert client.delete("/v1/pages/p1").status_code == 204


def test_stats(client, png):
    _upload(client, "p1", png())
    client.post("/v1/pages/p1/translate", json={"source_lang": "ja"})

    body = client.get("/v1/pipeline/stats").json()

    assert body["cache"]["entries"] == 1
    assert body["cache"]["misses"] == 1
    assert set(body["pools"]) == {"detection", "translation"}


def test_ocr_returns_regions_without_translating(client, png, mt_engine):
    _upload(client, "p1", png(400, 600))

    resp = client.post("/v1/pages/p1/ocr", json={"source_lang": "ja"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ready"
    assert body["language_hint"] == "japan"
    assert [r["text"] for r in body["regions"]] == ["こんにちは", "どうしたの?"]
    assert body["regions"][0]["bbox"] == {"x0": 10.0, "y0": 10.0, "x1": 110.0, "y1": 60.0}
    assert mt_engine.calls == 0


def test_ocr_without_body_uses_default_hint(client, png, ocr_engine):
    _upload(client, "p1", png())

    resp = client.post("/v1/pages/p1/ocr")

    assert resp.status_code == 200
    assert ocr_engine.hints == ["japan"]


def test_ocr_failure_is_a_failed_outcome(client, png, ocr_engine):
    ocr_engine.error = RuntimeError("engine down")
    _upload(client, "p1", png())

    body = client.post("/v1/pages/p1/ocr", json={"source_lang": "ja"}).json()

    assert body["status"] == "failed"
    assert body["error_code"] == "ocr_unavailable"


def test_ocr_unknown_page_is_404(client):
    assert client.post("/v1/pages/missing/ocr").status_code == 404
