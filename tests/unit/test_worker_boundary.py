from __future__ import annotations

import json

import pytest

from bonsai.core.errors import WorkerError
from bonsai.core.models.enums import Phase, RunStatus
from bonsai.core.services.worker import WorkerResult, parse_worker_output


def _payload(**overrides) -> str:
    data = {
        "status": "completed",
        "messages": [{"content": "Found the cache layer", "kind": "completion"}],
        "phaseChange": "planning",
        "tokensUsed": {"input": 1200, "output": 340},
    }
    data.update(overrides)
    return json.dumps(data)


class TestParseWorkerOutput:
    def test_parses_camel_case_contract(self) -> None:
        result = parse_worker_output(_payload())
        assert result.run_status is RunStatus.COMPLETED
        assert result.phase_change is Phase.PLANNING
        assert result.tokens_used.input == 1200
        assert [m.content for m in result.messages_of("completion")] == ["Found the cache layer"]

    def test_last_json_object_wins(self) -> None:
        stdout = 'log line {"status": "error"}\nthinking...\n' + _payload(status="BLOCKED")
        assert parse_worker_output(stdout).status == "blocked"

    def test_braces_inside_strings_do_not_confuse_extraction(self) -> None:
        stdout = _payload(messages=[{"content": "use {a} and \"}\" carefully"}])
        result = parse_worker_output(stdout)
        assert result.messages[0].content == 'use {a} and "}" carefully'

    def test_unknown_message_kind_becomes_status(self) -> None:
        result = parse_worker_output(_payload(messages=[{"content": "x", "kind": "shout"}]))
        assert result.messages[0].kind == "status"

    def test_blank_phase_change_is_none(self) -> None:
        assert parse_worker_output(_payload(phaseChange="")).phase_change is None

    @pytest.mark.parametrize("stdout", ["", "no json here", "[1, 2, 3]"])
    def test_missing_object_raises(self, stdout: str) -> None:
        with pytest.raises(WorkerError, match="no JSON result"):
            parse_worker_output(stdout)

    def test_contract_violation_raises(self) -> None:
        with pytest.raises(WorkerError, match="invalid"):
            parse_worker_output(_payload(status="finished"))

    def test_negative_tokens_are_rejected(self) -> None:
        with pytest.raises(WorkerError):
            parse_worker_output(_payload(tokensUsed={"input": -1}))


class TestWorkerResult:
    def test_failure_carries_detail_as_message(self) -> None:
        result = WorkerResult.failure("timeout", "budget exceeded")
        assert result.run_status is RunStatus.TIMEOUT
        assert result.error == "budget exceeded"
        assert [m.content for m in result.messages] == ["budget exceeded"]

    def test_snake_case_names_are_accepted(self) -> None:
        result = WorkerResult.model_validate({"status": "completed", "phase_change": "DONE"})
        assert result.phase_change is Phase.DONE
