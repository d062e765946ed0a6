from pathlib import Path

import pytest

from kbase import ingest
from kbase.ingest import main
from kbase.services.rag.loader import load_documents


@pytest.fixture(autouse=True)
def keep_default_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ingest, "configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def data_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    path = tmp_path / "kbase-data"
    monkeypatch.setenv("KB_DATA_DIR", str(path))
    monkeypatch.setenv("KB_EMBEDDING_DIM", "32")
    return path


def test_cli_ingests_directory(data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source_dir = tmp_path / "sample_docs"
    (source_dir / "nested").mkdir(parents=True)
    (source_dir / "a.txt").write_text("alpha beta gamma " * 40, encoding="utf-8")
    (source_dir / "nested" / "b.md").write_text("# heading\n\n" + ("delta " * 60), encoding="utf-8")
    (source_dir / "skip.bin").write_bytes(b"\x00\x01")
    (source_dir / "blank.txt").write_text("   \n", encoding="utf-8")
    (source_dir / ".git").mkdir()
    (source_dir / ".git" / "notes.md").write_text("not a document", encoding="utf-8")

    main([str(source_dir), "--source-id", "samples"])

    output = capsys.readouterr().out
    assert "status=done" in output
    assert "source_id=samples" in output
    assert "total=2 completed=2 failed=0" in output
    assert (data_dir / "content.db").exists()


def test_cli_defaults_source_id_to_directory_name(
    data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    source_dir = tmp_path / "handbook"
    source_dir.mkdir()
    (source_dir / "intro.md").write_text("Welcome to the plant handbook.", encoding="utf-8")

    main([str(source_dir)])

    assert "source_id=handbook" in capsys.readouterr().out


def test_cli_extension_filter(data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    source_dir = tmp_path / "mixed"
    source_dir.mkdir()
    (source_dir / "notes.txt").write_text("plain notes", encoding="utf-8")
    (source_dir / "guide.md").write_text("# Guide\n\nsteps", encoding="utf-8")

    main([str(source_dir), "--ext", "md"])

    assert "total=1" in capsys.readouterr().out


def test_cli_fails_for_missing_directory(
    data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main([str(tmp_path / "does-not-exist")])

    assert exc_info.value.code == 1
    assert "Source directory not found" in capsys.readouterr().err


def test_cli_fails_when_nothing_to_ingest(
    data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    source_dir = tmp_path / "empty"
    source_dir.mkdir()
    (source_dir / "image.png").write_bytes(b"\x89PNG")

    with pytest.raises(SystemExit) as exc_info:
        main([str(source_dir)])

    assert exc_info.value.code == 1
    assert "No non-empty supported documents" in capsys.readouterr().err


def test_cli_ingests_source_and_config_files(
    data_dir: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    source_dir = tmp_path / "repo"
    (source_dir / "src").mkdir(parents=True)
    (source_dir / "src" / "pump_control.py").write_text(
        "def start_pump(speed):\n    return speed * 2\n", encoding="utf-8"
    )
    (source_dir / "deploy.yaml").write_text("pump:\n  speed: 1200\n", encoding="utf-8")
    (source_dir / "README.md").write_text("# Pump controller\n\nStarts the pump.", encoding="utf-8")
    (source_dir / "logo.svg").write_text("<svg/>", encoding="utf-8")

    main([str(source_dir), "--source-id", "repo"])

    assert "total=3 completed=3 failed=0" in capsys.readouterr().out


def test_loader_keeps_relative_paths_for_code_files(tmp_path: Path) -> None:
    (tmp_path / "pkg").mkdir()
    (tmp_path / "pkg" / "settings.toml").write_text("[pump]\nspeed = 1200\n", encoding="utf-8")
    (tmp_path / "run.sh").write_text("echo start\n", encoding="utf-8")

    documents = load_documents(tmp_path)

    assert [document.file_path for document in documents] == ["pkg/settings.toml", "run.sh"]
    assert [document.title for document in documents] == ["settings", "run"]
