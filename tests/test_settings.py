from __future__ import annotations

from pathlib import Path

import pytest

from trackbatch.config import parse_project_config
from trackbatch.models import ConfigError, VideoInfo
from trackbatch.registry import JobRegistry
from trackbatch.settings import (
    discover_project_settings,
    fix_project_settings,
    parse_video_name,
    read_video_paths,
    register_project_settings,
    video_info_for,
    video_stem,
)


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content.strip() + "\n", encoding="utf-8")


def test_parse_video_name_extracts_datetime_and_part() -> None:
    assert parse_video_name("fish_20240501_134500_part2") == VideoInfo(
        video="fish_20240501_134500_part2",
        datetime="2024-05-01T13:45:00",
        part="2",
    )
    assert parse_video_name("arena1_2023-11-30_pt-03") == VideoInfo(
        video="arena1_2023-11-30_pt-03", datetime="2023-11-30", part="3"
    )
    assert parse_video_name("clip-00") == VideoInfo(video="clip-00")
    assert parse_video_name("run_99991399").datetime == ""


def test_video_stem_handles_windows_paths() -> None:
    assert video_stem("C:\\data\\fish\\clip-00.avi") == "clip-00"
    assert video_stem("/data/fish/clip-00.mp4") == "clip-00"


def test_read_video_paths_from_toml_and_yaml(tmp_path: Path) -> None:
    toml_doc = tmp_path / "a.toml"
    _write(toml_doc, 'video_paths = ["/data/clip-00.avi", "/data/clip-00b.avi"]\nnumber_of_animals = 5')
    yaml_doc = tmp_path / "b.yaml"
    _write(yaml_doc, "video_paths:\n  - /data/clip-01.avi")

    assert read_video_paths(toml_doc) == ["/data/clip-00.avi", "/data/clip-00b.avi"]
    assert read_video_paths(yaml_doc) == ["/data/clip-01.avi"]


def test_read_video_paths_retries_with_path_fix(tmp_path: Path) -> None:
    doc = tmp_path / "win.toml"
    _write(doc, 'video_paths = ["C:\\Users\\lab\\clip-07.avi"]')

    with pytest.raises(ConfigError, match="Cannot parse settings document"):
        read_video_paths(doc)
    assert read_video_paths(doc, find="\\", replace="/") == ["C:/Users/lab/clip-07.avi"]


def test_video_info_for_unusable_document_is_empty(tmp_path: Path) -> None:
    doc = tmp_path / "empty.toml"
    _write(doc, "number_of_animals = 3")
    assert video_info_for(doc) == VideoInfo()


def test_discovery_skips_output_areas_and_requires_documents(tmp_path: Path) -> None:
    config = parse_project_config({}, base=tmp_path)
    with pytest.raises(ConfigError, match="No settings documents"):
        discover_project_settings(config)

    _write(tmp_path / "batch1" / "a.toml", 'video_paths = ["/d/a.avi"]')
    _write(tmp_path / "sessions" / "session_a" / "copy.toml", 'video_paths = ["/d/a.avi"]')
    _write(tmp_path / "logs" / "stray.toml", 'video_paths = ["/d/a.avi"]')

    found = discover_project_settings(config)
    assert found == [(tmp_path / "batch1" / "a.toml").resolve()]


def test_fix_project_settings_is_idempotent(tmp_path: Path) -> None:
    config = parse_project_config({}, base=tmp_path)
    _write(tmp_path / "a.toml", 'video_paths = ["D:\\videos\\clip.avi"]')
    _write(tmp_path / "b.toml", 'video_paths = ["/videos/clip.avi"]')

    assert fix_project_settings(config, dry_run=True) == [(tmp_path / "a.toml").resolve()]
    assert "\\" in (tmp_path / "a.toml").read_text(encoding="utf-8")

    assert fix_project_settings(config) == [(tmp_path / "a.toml").resolve()]
    assert (tmp_path / "a.toml").read_text(encoding="utf-8").strip() == (
        'video_paths = ["D:/videos/clip.avi"]'
    )
    assert fix_project_settings(config) == []


def test_fix_project_settings_skips_unreadable_documents(tmp_path: Path, caplog) -> None:
    config = parse_project_config({}, base=tmp_path)
    (tmp_path / "a.toml").write_bytes(b'video_paths = ["/videos/clip-\xe9.avi"]\n')
    _write(tmp_path / "b.toml", 'video_paths = ["D:\\videos\\clip.avi"]')

    with caplog.at_level("WARNING", logger="trackbatch"):
        changed = fix_project_settings(config)

    assert changed == [(tmp_path / "b.toml").resolve()]
    assert "fix_paths_failed" in caplog.text
    assert (tmp_path / "a.toml").read_bytes() == b'video_paths = ["/videos/clip-\xe9.avi"]\n'


def test_register_project_settings_twice_adds_once(tmp_path: Path) -> None:
    config = parse_project_config({"settings_dir": "settings"}, base=tmp_path)
    _write(tmp_path / "settings" / "a.toml", 'video_paths = ["/d/fish_2024-05-01_part1.avi"]')
    _write(tmp_path / "settings" / "b.toml", 'video_paths = ["/d/clip-00.avi"]')

    first = register_project_settings(config)
    second = register_project_settings(config)

    assert (first["created"], first["added"], first["total"]) == (True, 2, 2)
    assert (second["created"], second["added"], second["total"]) == (False, 0, 2)
    records = JobRegistry(config.registry).load()
    assert [record.settings_file for record in records] == [
        "settings/a.toml",
        "settings/b.toml",
    ]
    assert (records[0].datetime, records[0].part) == ("2024-05-01", "1")
