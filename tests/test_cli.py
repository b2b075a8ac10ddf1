import json

import pytest

from conftest import make_pdf, png_bytes, scan_like_image
from compress_document import main


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DOC_COMPRESSOR_TEMP_ROOT", str(tmp_path / "work"))
    monkeypatch.setenv("DOC_COMPRESSOR_GS", "off")
    monkeypatch.setenv("DOC_COMPRESSOR_WORKERS", "1")


def run(argv):
    with pytest.raises(SystemExit) as exc:
        main([str(a) for a in argv])
    return exc.value.code


def test_single_file_with_custom_band(tmp_path, capsys):
    source = tmp_path / "scan.pdf"
    source.write_bytes(make_pdf([scan_like_image(400, 500)]))
    output = tmp_path / "out.pdf"

    code = run([source, "-o", output, "--min", 1, "--max", 100000, "--target", 50])

    assert code == 0
    assert output.read_bytes().startswith(b"%PDF-")
    assert "Method: raster-search" in capsys.readouterr().out


def test_batch_writes_into_output_dir(tmp_path, capsys):
    sources = []
    for name in ("a.pdf", "b.pdf"):
        path = tmp_path / name
        path.write_bytes(b"%PDF-1.4\n" + b"\0" * 1000)
        sources.append(path)
    out_dir = tmp_path / "out"

    code = run([*sources, "--output-dir", out_dir])

    assert code == 0
    assert sorted(p.name for p in out_dir.iterdir()) == ["a_compressed.pdf", "b_compressed.pdf"]
    assert "Batch complete: 2/2 files" in capsys.readouterr().out


def test_invalid_band_exits_with_error(tmp_path):
    source = tmp_path / "a.pdf"
    source.write_bytes(b"%PDF-1.4\n")
    assert run([source, "--min", 300, "--max", 200, "--target", 250]) == 1


def test_missing_input_exits_with_error(tmp_path):
    assert run([tmp_path / "missing.pdf"]) == 1


def test_failed_file_sets_exit_code(tmp_path):
    source = tmp_path / "broken.pdf"
    source.write_bytes(b"not a document " * 40_000)
    assert run([source, "-o", tmp_path / "out.pdf"]) == 1
    assert not (tmp_path / "out.pdf").exists()


def test_analyze_prints_json(tmp_path, capsys):
    source = tmp_path / "scan.pdf"
    source.write_bytes(make_pdf([scan_like_image(200, 200)] * 2))

    assert run([source, "--analyze"]) == 0

    out = capsys.readouterr().out
    report = json.loads(out.split(": ", 1)[1])
    assert report["page_count"] == 2


def test_image_target_to_a4(tmp_path):
    source = tmp_path / "photo.png"
    source.write_bytes(png_bytes(scan_like_image(900, 700, noise=4)))

    assert run([source, "--image-target", 150, "--a4"]) == 0

    output = tmp_path / "photo_compressed.pdf"
    assert output.read_bytes().startswith(b"%PDF-")


def test_small_image_keeps_its_extension(tmp_path):
    source = tmp_path / "photo.png"
    original = png_bytes(scan_like_image(40, 40))
    source.write_bytes(original)

    assert run([source]) == 0

    assert (tmp_path / "photo_compressed.png").read_bytes() == original
    assert not (tmp_path / "photo_compressed.pdf").exists()
