import io

import pytest
from PIL import Image

from collection_cluster.errors import DecodeError
from collection_cluster.images import ImageHandles, decode_image, filter_inputs, load_directory, make_inputs
from collection_cluster.records import RawImageInput

from conftest import RED, png_bytes, raw_image


def _halves(vertical, size=64):
    im = Image.new("L", (size, size), 0)
    box = (0, 0, size // 2, size) if vertical else (0, 0, size, size // 2)
    im.paste(255, box)
    buf = io.BytesIO()
    im.save(buf, format="PNG")
    return buf.getvalue()


def test_ids_keep_duplicate_names_apart():
    inputs = make_inputs([("a.png", b"1", "image/png"), ("a.png", b"2", "image/png")])
    assert [raw.id for raw in inputs] == ["a.png-0", "a.png-1"]


def test_load_directory(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "b.png").write_bytes(png_bytes(RED))
    (tmp_path / "a.txt").write_text("hello")
    (tmp_path / "sub" / "c.jpg").write_bytes(b"jpeg?")
    (tmp_path / "noext").write_bytes(b"???")
    inputs = load_directory(tmp_path)
    assert [(raw.filename, raw.mime_type) for raw in inputs] == [
        ("a.txt", "text/plain"),
        ("b.png", "image/png"),
        ("noext", "application/octet-stream"),
        ("c.jpg", "image/jpeg"),
    ]
    assert inputs[1].id == "b.png-1"


def test_decode_valid_and_invalid():
    im = decode_image(raw_image("red.png", RED))
    assert im.size == (32, 32)
    broken = RawImageInput(id="bad-0", filename="bad.png", data=b"\x89PNG broken", mime_type="image/png")
    with pytest.raises(DecodeError) as info:
        decode_image(broken)
    assert info.value.image_id == "bad-0"
    assert info.value.filename == "bad.png"


def test_filter_drops_non_images():
    files = [
        raw_image("a.png", RED, 0),
        RawImageInput(id="b-1", filename="b.pdf", data=b"%PDF", mime_type="application/pdf"),
        raw_image("c.gif", RED, 2, mime="IMAGE/GIF"),
    ]
    kept, dropped = filter_inputs(files)
    assert [raw.id for raw in kept] == ["a.png-0", "c.gif-2"]
    assert dropped == 1


def test_filter_skips_perceptual_duplicates():
    board = _halves(vertical=True)
    files = [
        RawImageInput(id="a-0", filename="a.png", data=board, mime_type="image/png"),
        RawImageInput(id="b-1", filename="b.png", data=_halves(vertical=False), mime_type="image/png"),
        RawImageInput(id="c-2", filename="c.png", data=board, mime_type="image/png"),
        RawImageInput(id="d-3", filename="d.png", data=b"junk", mime_type="image/png"),
    ]
    kept, dropped = filter_inputs(files, skip_duplicates=True)
    assert [raw.id for raw in kept] == ["a-0", "b-1", "d-3"]
    assert dropped == 1

    kept, dropped = filter_inputs(files)
    assert len(kept) == 4 and dropped == 0


def test_handles_lifecycle():
    handles = ImageHandles()
    raw = raw_image("a.png", RED)
    url = handles.acquire(raw)
    other = handles.acquire(raw)
    assert url.startswith("blob:") and url != other
    assert handles.resolve(url) == raw.data
    assert handles.active == 2
    handles.release(url)
    handles.release(url)
    assert handles.resolve(url) is None
    assert handles.active == 1
