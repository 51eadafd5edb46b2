"""
Tests for the benchmark CLI (in-memory key store).
"""

from __future__ import annotations

import pytest

from table_envelope.benchmark import main, run_benchmark


async def test_run_benchmark_in_memory(capsys: pytest.CaptureFixture[str]) -> None:
    result = await run_benchmark(entity_count=5, property_count=3)

    assert result.key_store == "memory"
    assert result.entity_count == 5
    assert result.encrypt_time >= 0
    output = capsys.readouterr().out
    assert "[OK] 5 entities rotated" in output


def test_main_rejects_non_positive_counts(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["--entities", "0"])

    assert exc_info.value.code == 2


def test_main_runs(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setattr("table_envelope.benchmark.load_dotenv", lambda *args, **kwargs: False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    main(["--entities", "2", "--properties", "2"])

    assert "Verify (new key)" in capsys.readouterr().out
