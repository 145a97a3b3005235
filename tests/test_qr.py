import base64
import io
import json

import pytest
from PIL import Image

import qr
from errors import NotFoundError, QREncodingError, ValidationError
from schemas import PhotoIn

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@pytest.fixture
def encoded_texts(monkeypatch):
    """Record every text handed to the QR renderer."""
    texts = []
    real_render = qr.render_png

    def spy(text, size=qr.DEFAULT_SIZE):
        texts.append(text)
        return real_render(text, size)

    monkeypatch.setattr(qr, "render_png", spy)
    return texts


def test_full_payload_round_trips_lot_fields(qr_generator, make_lot, encoded_texts):
    lot = make_lot(lot_id="LOT-42", zone="West", location_id="W-09")

    _, payload, data_url = qr_generator.encode_full("lot-42", "http://farm.test/")

    decoded = json.loads(encoded_texts[-1])
    assert decoded == payload
    assert decoded["lotId"] == "LOT-42"
    assert decoded["speciesCode"] == "MNG"
    assert decoded["speciesName"] == "Mango"
    assert decoded["zone"] == "West"
    assert decoded["locationId"] == "W-09"
    assert decoded["url"] == f"http://farm.test/api/lots/{lot['_id']}"
    assert data_url.startswith("data:image/png;base64,")
    assert base64.b64decode(data_url.split(",", 1)[1]).startswith(PNG_SIGNATURE)


def test_reference_encodes_only_the_lookup_url(qr_generator, make_lot, encoded_texts):
    lot = make_lot(lot_id="LOT-7")

    _, url, info, _ = qr_generator.encode_reference("LOT-7", "http://farm.test")

    assert encoded_texts[-1] == url == f"http://farm.test/api/lots/{lot['_id']}"
    assert "MNG" not in encoded_texts[-1]
    assert info["speciesName"] == "Mango"


def _module_matrix(png, modules):
    """Read the dark/light module grid back out of a rendered PNG."""
    with Image.open(io.BytesIO(png)) as img:
        img = img.convert("L")
        step = img.size[0] / modules
        return [[img.getpixel((int((x + 0.5) * step), int((y + 0.5) * step))) < 128
                 for x in range(modules)] for y in range(modules)]


def _expected_matrix(text):
    code = qr.qrcode.QRCode(error_correction=qr.ERROR_CORRECT_M, border=qr.MARGIN)
    code.add_data(text)
    code.make(fit=True)
    return code.get_matrix()


@pytest.mark.parametrize("mode", ["full", "reference"])
def test_rendered_image_carries_exactly_the_payload(qr_generator, make_lot, mode):
    lot = make_lot(lot_id="LOT-9", zone="South", location_id="S-3")
    url = f"http://farm.test/api/lots/{lot['_id']}"
    if mode == "full":
        _, payload, png = qr_generator.encode_full("LOT-9", "http://farm.test", fmt="png", size=370)
        expected_text = qr.payload_text(payload)
        assert json.loads(expected_text)["locationId"] == "S-3"
    else:
        _, _, _, png = qr_generator.encode_reference("LOT-9", "http://farm.test", fmt="png", size=370)
        expected_text = url

    expected = _expected_matrix(expected_text)

    assert _module_matrix(png, len(expected)) == expected
    assert _module_matrix(png, len(expected)) != _expected_matrix(expected_text + " ")


def test_unknown_lot_is_not_found(qr_generator):
    with pytest.raises(NotFoundError):
        qr_generator.encode_full("MISSING", "http://farm.test")


def test_render_png_honours_size():
    png = qr.render_png("hello", 256)

    with Image.open(io.BytesIO(png)) as img:
        assert img.size == (256, 256)


@pytest.mark.parametrize("size", [10, 5000])
def test_render_png_rejects_out_of_range_size(size):
    with pytest.raises(ValidationError):
        qr.render_png("hello", size)


def test_render_png_wraps_library_failures(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("encoder exploded")

    monkeypatch.setattr(qr.qrcode.QRCode, "make", boom)

    with pytest.raises(QREncodingError):
        qr.render_png("hello")


def test_lot_qr_endpoint_base64(client, make_lot, auth_headers):
    make_lot(lot_id="LOT-1")

    res = client.get("/api/qr/lot/LOT-1", headers=auth_headers("field"))

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["lot_id"] == "LOT-1"
    assert data["format"] == "base64"
    assert data["size"] == 200
    assert data["qr_code"].startswith("data:image/png;base64,")
    assert data["lot_info"]["url"].startswith("http://plantation.test/api/lots/")


def test_lot_qr_endpoint_png(client, make_lot, auth_headers):
    make_lot(lot_id="LOT-1")

    res = client.get("/api/qr/lot/LOT-1", params={"format": "png", "size": 128}, headers=auth_headers())

    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"
    assert res.headers["content-disposition"] == 'attachment; filename="lot-LOT-1-qr.png"'
    assert res.content.startswith(PNG_SIGNATURE)
    with Image.open(io.BytesIO(res.content)) as img:
        assert img.size == (128, 128)


def test_lot_info_qr_endpoint(client, make_lot, auth_headers):
    lot = make_lot(lot_id="LOT-1")

    res = client.get("/api/qr/lot/LOT-1/info", headers=auth_headers())

    data = res.json()["data"]
    assert data["url"] == f"http://plantation.test/api/lots/{lot['_id']}"
    assert data["lot_info"]["lotId"] == "LOT-1"

    res = client.get("/api/qr/lot/LOT-1/info", params={"format": "png"}, headers=auth_headers())
    assert res.headers["content-disposition"] == 'attachment; filename="lot-LOT-1-info-qr.png"'


def test_lot_qr_endpoint_errors(client, make_lot, auth_headers):
    make_lot(lot_id="LOT-1")

    res = client.get("/api/qr/lot/NOPE", headers=auth_headers())
    assert res.status_code == 404
    assert res.json()["message"] == "Plant lot not found"

    res = client.get("/api/qr/lot/LOT-1", params={"format": "svg"}, headers=auth_headers())
    assert res.status_code == 400
    assert res.json()["message"] == 'Invalid format. Use "base64" or "png"'

    res = client.get("/api/qr/lot/LOT-1")
    assert res.status_code == 401


def test_batch_reports_unknown_codes_per_item(client, make_lot, auth_headers):
    make_lot(lot_id="LOT-1")
    make_lot(lot_id="LOT-2")

    res = client.post("/api/qr/lots/batch", json={"lot_ids": ["lot-1", "NOPE", "LOT-2"]},
                      headers=auth_headers("analyst"))

    assert res.status_code == 200
    data = res.json()["data"]
    results = data["qr_codes"]
    assert [r["lot_id"] for r in results] == ["LOT-1", "NOPE", "LOT-2"]
    assert [("error" in r) for r in results] == [False, True, False]
    assert results[1]["error"] == "Plant lot not found"
    assert results[0]["qr_code"].startswith("data:image/png;base64,")
    assert (data["total"], data["requested"], data["succeeded"], data["failed"]) == (3, 3, 2, 1)


def test_batch_png_items_are_plain_base64(qr_generator, make_lot):
    make_lot(lot_id="LOT-1")

    result = qr_generator.encode_batch(["LOT-1"], "http://farm.test", fmt="png")

    png = base64.b64decode(result["qr_codes"][0]["qr_code"])
    assert png.startswith(PNG_SIGNATURE)


def test_batch_reference_mode(qr_generator, make_lot, encoded_texts):
    lot = make_lot(lot_id="LOT-1")

    qr_generator.encode_batch(["LOT-1"], "http://farm.test", mode="reference")

    assert encoded_texts == [f"http://farm.test/api/lots/{lot['_id']}"]


def test_batch_encoding_failure_degrades_to_item_error(qr_generator, make_lot, monkeypatch):
    for code in ("LOT-1", "BAD", "LOT-3"):
        make_lot(lot_id=code)
    real_render = qr.render_png

    def flaky(text, size=qr.DEFAULT_SIZE):
        if '"lotId":"BAD"' in text:
            raise QREncodingError("Error generating QR code: boom")
        return real_render(text, size)

    monkeypatch.setattr(qr, "render_png", flaky)

    result = qr_generator.encode_batch(["LOT-1", "BAD", "LOT-3"], "http://farm.test")

    items = result["qr_codes"]
    assert items[1]["error"] == "Failed to generate QR code"
    assert items[1]["lot_info"]["lotId"] == "BAD"
    assert "qr_code" in items[0] and "qr_code" in items[2]
    assert result["failed"] == 1


def test_batch_limits(client, qr_generator, auth_headers):
    res = client.post("/api/qr/lots/batch", json={"lot_ids": [f"L{i}" for i in range(51)]},
                      headers=auth_headers())
    assert res.status_code == 400

    res = client.post("/api/qr/lots/batch", json={"lot_ids": []}, headers=auth_headers())
    assert res.status_code == 400

    with pytest.raises(ValidationError):
        qr_generator.encode_batch([], "http://farm.test")
    with pytest.raises(ValidationError):
        qr_generator.encode_batch(["A"], "http://farm.test", mode="thumbnail")


def test_all_unknown_batch_still_succeeds(client, auth_headers):
    res = client.post("/api/qr/lots/batch", json={"lot_ids": ["X1", "X2"]}, headers=auth_headers())

    data = res.json()["data"]
    assert res.status_code == 200
    assert (data["succeeded"], data["failed"]) == (0, 2)


def test_qr_stats(client, tracker, make_lot, field_worker, auth_headers):
    lot = make_lot(lot_id="LOT-1")
    make_lot(lot_id="LOT-2")
    tracker.attach_photo(lot["_id"], PhotoIn(url="https://cdn.example.com/1.png"), field_worker)

    res = client.get("/api/qr/stats", headers=auth_headers())

    data = res.json()["data"]
    assert data["total_lots"] == 2
    assert data["lots_with_photos"] == 1
    assert data["qr_codes_available"] == 2
