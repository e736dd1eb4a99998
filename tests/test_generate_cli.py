from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from cadence_worker import generate
from cadence_worker.app.models import GenerationResult
from cadence_worker.services.trace import TraceRecorder


def _run(argv: list[str]) -> int:
    return asyncio.run(generate._run(generate._parse_args(argv)))


def test_parse_args_defaults() -> None:
    args = generate._parse_args([])
    assert args.style == []
    assert args.category is None
    assert args.seed is None
    assert not args.max_mode


def test_category_run_is_reproducible(capsys: pytest.CaptureFixture[str]) -> None:
    assert _run(["--category", "lofi-study", "--seed", "42"]) == 0
    first = capsys.readouterr().out
    assert _run(["--category", "lofi-study", "--seed", "42"]) == 0
    second = capsys.readouterr().out
    assert first == second
    assert "== generated ==" in first
    assert "Instruments:" in first


def test_category_refine_and_trace_dir(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    argv = [
        "--category",
        "cozy-rainy",
        "--seed",
        "7",
        "--max-mode",
        "--refine",
        "more rain",
        "--trace",
        "--trace-dir",
        str(tmp_path),
    ]
    assert _run(argv) == 0
    out = capsys.readouterr().out
    assert "== refined ==" in out
    traces = sorted(tmp_path.glob("trace-*.json"))
    assert len(traces) == 2
    actions = {json.loads(path.read_text(encoding="utf-8"))["action"] for path in traces}
    assert actions == {"generate", "refine"}


def test_invalid_request_returns_error_code() -> None:
    argv = ["--style", "a", "--style", "b", "--style", "c", "--style", "d", "--style", "e"]
    assert _run(argv) == 1


def test_main_exits_with_status() -> None:
    with pytest.raises(SystemExit) as excinfo:
        generate.main(["--category", "cozy-rainy", "--seed", "1"])
    assert excinfo.value.code == 0


def test_written_trace_is_the_capped_payload(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    recorder = TraceRecorder(seed=9)
    recorder.run_start("generate custom")
    for index in range(400):
        recorder.decision("other", f"blend.select[{index}]", "value", why="reason " * 40)
    run = recorder.finalize()
    generate._write_trace(GenerationResult(text="x", trace=run), tmp_path)

    path = tmp_path / f"trace-{run.run_id}.json"
    size = path.stat().st_size
    assert size == run.stats.persisted_bytes
    assert size <= 64 * 1024
    assert json.loads(path.read_text(encoding="utf-8"))["run_id"] == run.run_id
    assert f"({size} bytes)" in capsys.readouterr().out


def test_remix_redraws_only_the_requested_field(capsys: pytest.CaptureFixture[str]) -> None:
    argv = ["--category", "cozy-rainy", "--seed", "5", "--max-mode", "--remix", "instruments"]
    assert _run(argv) == 0
    out = capsys.readouterr().out
    assert "== remixed instruments ==" in out
    generated, remixed = out.split("== remixed instruments ==")

    def line(section: str, prefix: str) -> str:
        return next(text for text in section.splitlines() if text.startswith(prefix))

    assert line(generated, "Genre:") == line(remixed, "Genre:")
    assert line(generated, "Mood:") == line(remixed, "Mood:")
    assert line(remixed, "Instruments:").startswith('Instruments: "')
