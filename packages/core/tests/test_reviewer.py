"""Tests for the review pipeline: planning, the worker pool, bisection and failure policy."""

import threading
from unittest.mock import MagicMock

import pytest
import requests

from difflens_core.config import build_review_config, load_config
from difflens_core.errors import ReviewAbortedError, SchemaValidationError
from difflens_core.models import (
    AffectedScopeResult,
    AstRange,
    AstSnippet,
    Diagnostic,
    DiffHunk,
    FileDiff,
    Issue,
    ReviewUnit,
    SourceType,
)
from difflens_core.reviewer import AIReviewer, ReviewContext, print_issues

ENDPOINT = "https://review.example.com/api/review"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DIFFLENS_API_KEY", "OPENAI_API_KEY", "DIFFLENS_API_ENDPOINT", "DIFFLENS_MODEL"):
        monkeypatch.delenv(name, raising=False)


def make_config(**overrides):
    base = {
        "api_format": "custom",
        "api_endpoint": ENDPOINT,
        "api_key": "sk-test-key",
        "batch_size": 1,
        "batch_concurrency": 2,
        "retry_count": 0,
    }
    base.update(overrides)
    return build_review_config(load_config("/nonexistent/.difflens.yml", cli_overrides=base))


def http_response(status=200, data=None, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = data
    return resp


def issue_for(path, line=1, message=None):
    return {"file": path, "line": line, "column": 1, "message": message or f"issue in {path}", "severity": "warning"}


def one_issue_per_file(url, json, headers, timeout):
    return http_response(data={"issues": [issue_for(f["path"]) for f in json["files"]]})


def posted_paths(session):
    return [[f["path"] for f in c.kwargs["json"]["files"]] for c in session.post.call_args_list]


def trace_events(trace, name):
    return [c.kwargs for c in trace.log_event.call_args_list if c.args[0] == name]


def make_reviewer(session, trace=None, **overrides):
    return AIReviewer(make_config(**overrides), session=session, trace=trace or MagicMock())


FILES = [
    {"path": "a.py", "content": "import os\n"},
    {"path": "b.py", "content": "x = 1\n"},
    {"path": "c.py", "content": "print(x)\n"},
]


class TestEndToEnd:
    def test_one_issue_per_file_in_order(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file

        issues = make_reviewer(session).review(FILES[:2])

        assert [i.message for i in issues] == ["issue in a.py", "issue in b.py"]
        assert all(i.rule == "ai_review" and i.severity == "warning" for i in issues)
        assert session.post.call_count == 2
        assert session.post.call_args.args[0] == ENDPOINT

    def test_results_follow_batch_order_not_completion_order(self):
        b_done = threading.Event()
        finished = []

        def post(url, json, headers, timeout):
            path = json["files"][0]["path"]
            if path == "a.py":
                assert b_done.wait(5)
            finished.append(path)
            if path == "b.py":
                b_done.set()
            return one_issue_per_file(url, json, headers, timeout)

        session = MagicMock()
        session.post.side_effect = post

        issues = make_reviewer(session, batch_concurrency=2).review(FILES)

        assert finished[0] == "b.py"
        assert [i.file for i in issues] == ["a.py", "b.py", "c.py"]

    def test_files_grouped_by_batch_size(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file

        make_reviewer(session, batch_size=2, batch_concurrency=1).review(FILES)

        assert posted_paths(session) == [["a.py", "b.py"], ["c.py"]]

    def test_content_read_when_not_supplied(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file
        reviewer = AIReviewer(make_config(), read_file=lambda path: "y = 2\n", session=session, trace=MagicMock())

        reviewer.review([{"path": "d.py"}])

        assert session.post.call_args.kwargs["json"]["files"] == [{"path": "d.py", "content": "y = 2\n"}]

    def test_unreadable_files_skipped(self):
        def read_file(path):
            raise OSError("no such file")

        session = MagicMock()
        reviewer = AIReviewer(make_config(), read_file=read_file, session=session, trace=MagicMock())

        assert reviewer.review([{"path": "missing.py"}]) == []
        session.post.assert_not_called()

    def test_reader_failure_skips_file_and_reviews_the_rest(self):
        def read_file(path):
            raise RuntimeError("scanner exploded")

        session = MagicMock()
        session.post.side_effect = one_issue_per_file
        reviewer = AIReviewer(make_config(), read_file=read_file, session=session, trace=MagicMock())

        issues = reviewer.review([{"path": "gone.py"}, {"path": "b.py", "content": "x = 1\n"}])

        assert posted_paths(session) == [["b.py"]]
        assert [i.file for i in issues] == ["b.py"]

    def test_plan_summary_traced(self):
        trace = MagicMock()
        session = MagicMock()
        session.post.side_effect = one_issue_per_file

        make_reviewer(session, trace=trace).review(FILES)

        [summary] = trace_events(trace, "ai_plan_summary")
        assert summary["units"] == 3
        assert summary["batches"] == 3
        assert summary["batching_mode"] == "file_count"
        assert len(trace_events(trace, "ai_batch_done")) == 3

    def test_each_review_starts_with_an_empty_cache(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file
        reviewer = make_reviewer(session)

        reviewer.review(FILES[:1])
        reviewer.review(FILES[:1])

        assert session.post.call_count == 2


class TestRequestAndConfigChecks:
    def test_empty_request_rejected(self):
        with pytest.raises(SchemaValidationError):
            make_reviewer(MagicMock()).review([])

    def test_blank_path_rejected(self):
        with pytest.raises(SchemaValidationError, match="files.0.path"):
            make_reviewer(MagicMock()).review([{"path": ""}])

    def test_disabled_review_makes_no_call(self):
        session = MagicMock()
        assert make_reviewer(session, enabled=False).review(FILES) == []
        session.post.assert_not_called()

    def test_invalid_endpoint_skips_review(self):
        session = MagicMock()
        assert make_reviewer(session, api_endpoint="not-a-url").review(FILES) == []
        session.post.assert_not_called()

    def test_preview_only_makes_no_call(self):
        session = MagicMock()
        assert make_reviewer(session, preview_only=True).review(FILES) == []
        session.post.assert_not_called()


class TestBisection:
    def test_oversized_batch_split_before_sending(self):
        trace = MagicMock()
        session = MagicMock()
        session.post.side_effect = one_issue_per_file
        files = [{"path": "a.py", "content": "x" * 800}, {"path": "b.py", "content": "y" * 800}]

        issues = make_reviewer(session, trace=trace, batch_size=2, max_request_chars=1000).review(files)

        assert posted_paths(session) == [["a.py"], ["b.py"]]
        assert [i.file for i in issues] == ["a.py", "b.py"]
        [split] = trace_events(trace, "batch_split_triggered")
        assert split["reason"] == "max_request_chars"

    def test_single_oversized_unit_sent_whole(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file

        make_reviewer(session, max_request_chars=1000).review([{"path": "a.py", "content": "x" * 5000}])

        assert session.post.call_count == 1

    def test_context_too_long_splits_batch(self):
        trace = MagicMock()

        def post(url, json, headers, timeout):
            if len(json["files"]) > 1:
                return http_response(status=413, text="payload too large")
            return one_issue_per_file(url, json, headers, timeout)

        session = MagicMock()
        session.post.side_effect = post

        issues = make_reviewer(session, trace=trace, batch_size=2, batch_concurrency=1).review(FILES[:2])

        assert posted_paths(session) == [["a.py", "b.py"], ["a.py"], ["b.py"]]
        assert [i.file for i in issues] == ["a.py", "b.py"]
        assert trace_events(trace, "batch_split_triggered")[0]["reason"] == "context_too_long"

    def test_halves_are_not_split_again(self):
        def post(url, json, headers, timeout):
            if len(json["files"]) > 1:
                return http_response(status=413, text="payload too large")
            return one_issue_per_file(url, json, headers, timeout)

        session = MagicMock()
        session.post.side_effect = post
        files = FILES + [{"path": "d.py", "content": "pass\n"}]

        issues = make_reviewer(session, batch_size=4, batch_concurrency=1).review(files)

        assert posted_paths(session) == [["a.py", "b.py", "c.py", "d.py"], ["a.py", "b.py"]]
        assert len(issues) == 1
        assert issues[0].rule == "ai_review_error"

    def test_other_http_errors_do_not_split(self):
        session = MagicMock()
        session.post.return_value = http_response(status=400, text='{"error": "invalid request"}')

        issues = make_reviewer(session, batch_size=2).review(FILES[:2])

        assert session.post.call_count == 1
        assert issues[0].rule == "ai_review_error"


class TestFailurePolicy:
    def test_warning_action_reports_synthetic_issue(self):
        session = MagicMock()
        session.post.return_value = http_response(status=500, text="boom")

        issues = make_reviewer(session, action="warning").review(FILES[:1])

        assert len(issues) == 1
        issue = issues[0]
        assert (issue.file, issue.line, issue.column) == ("", 1, 1)
        assert issue.severity == "warning"
        assert issue.rule == "ai_review_error"
        assert issue.message.startswith("AI review failed:")

    def test_log_action_reports_info(self):
        session = MagicMock()
        session.post.return_value = http_response(status=500, text="boom")

        issues = make_reviewer(session, action="log").review(FILES[:1])

        assert issues[0].severity == "info"

    def test_block_commit_aborts(self):
        session = MagicMock()
        session.post.return_value = http_response(status=500, text="boom")

        with pytest.raises(ReviewAbortedError) as exc_info:
            make_reviewer(session, action="block_commit").review(FILES[:1])

        assert exc_info.value.rule == "ai_review_error"

    def test_timeout_rule(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("read timed out")

        issues = make_reviewer(session).review(FILES[:1])

        assert issues[0].rule == "ai_review_timeout"
        assert issues[0].message.startswith("AI review timed out:")

    def test_timeout_aborts_under_block_commit(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(ReviewAbortedError) as exc_info:
            make_reviewer(session, action="block_commit").review(FILES[:1])

        assert exc_info.value.rule == "ai_review_timeout"

    def test_failed_batch_does_not_affect_others(self):
        def post(url, json, headers, timeout):
            if json["files"][0]["path"] == "b.py":
                return http_response(status=500, text="boom")
            return one_issue_per_file(url, json, headers, timeout)

        session = MagicMock()
        session.post.side_effect = post

        issues = make_reviewer(session, batch_concurrency=1).review(FILES)

        assert [i.rule for i in issues] == ["ai_review", "ai_review_error", "ai_review"]
        assert [i.file for i in issues] == ["a.py", "", "c.py"]

    def test_abort_stops_claiming_new_batches(self):
        session = MagicMock()
        session.post.return_value = http_response(status=500, text="boom")

        with pytest.raises(ReviewAbortedError):
            make_reviewer(session, action="block_commit", batch_concurrency=1).review(FILES)

        assert session.post.call_count == 1

    def test_in_flight_batches_finish_after_abort(self):
        # Batches already running are not cancelled when another one aborts.
        b_started = threading.Event()
        a_failed = threading.Event()

        def post(url, json, headers, timeout):
            path = json["files"][0]["path"]
            if path == "a.py":
                assert b_started.wait(5)
                a_failed.set()
                return http_response(status=500, text="boom")
            b_started.set()
            assert a_failed.wait(5)
            return one_issue_per_file(url, json, headers, timeout)

        session = MagicMock()
        session.post.side_effect = post

        with pytest.raises(ReviewAbortedError):
            make_reviewer(session, action="block_commit", batch_concurrency=2).review(FILES[:2])

        assert sorted(p[0] for p in posted_paths(session)) == ["a.py", "b.py"]


class TestDiffAndAstModes:
    DIFF = {"a.py": FileDiff(path="a.py", hunks=[DiffHunk(new_start=10, new_count=2, lines=["x = 1", "y = 2"])])}
    AST = {"a.py": AffectedScopeResult([AstSnippet(start_line=3, end_line=5, source="def f():\n    pass")])}

    def test_diff_mode_sends_fragments_and_filters_lines(self):
        session = MagicMock()
        session.post.return_value = http_response(
            data={"issues": [issue_for("a.py", line=10, message="kept"), issue_for("a.py", line=50, message="dropped")]}
        )

        issues = make_reviewer(session).review([{"path": "a.py", "content": "full file"}], diff_by_file=self.DIFF)

        sent = session.post.call_args.kwargs["json"]["files"][0]["content"]
        assert "# line 10\nx = 1" in sent
        assert "full file" not in sent
        assert [(i.line, i.message) for i in issues] == [(10, "kept")]

    def test_diff_only_disabled_sends_whole_file(self):
        session = MagicMock()
        session.post.return_value = http_response(data={"issues": [issue_for("a.py", line=50)]})

        issues = make_reviewer(session, diff_only=False).review(
            [{"path": "a.py", "content": "full file"}], diff_by_file=self.DIFF
        )

        assert session.post.call_args.kwargs["json"]["files"][0]["content"] == "full file"
        assert len(issues) == 1

    def test_file_without_hunks_sent_whole(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file

        make_reviewer(session).review([{"path": "b.py", "content": "full file"}], diff_by_file=self.DIFF)

        assert session.post.call_args.kwargs["json"]["files"][0]["content"] == "full file"

    def test_ast_mode_attaches_ranges_and_filters(self):
        session = MagicMock()
        session.post.return_value = http_response(
            data={"issues": [issue_for("a.py", line=4, message="inside"), issue_for("a.py", line=40, message="outside")]}
        )
        reviewer = AIReviewer(make_config(), read_file=lambda p: "", session=session, trace=MagicMock())

        issues = reviewer.review([{"path": "a.py", "content": "full file"}], ast_snippets_by_file=self.AST)

        assert [i.message for i in issues] == ["inside"]
        assert issues[0].ast_range == AstRange(3, 5)

    def test_lsp_and_header_context_included(self):
        session = MagicMock()
        session.post.side_effect = one_issue_per_file
        reviewer = AIReviewer(
            make_config(),
            read_file=lambda p: "import os\n\ndef f():\n    pass\n",
            session=session,
            trace=MagicMock(),
            lsp_reference_builder=lambda path, snippets: "def helper(): ...",
        )

        reviewer.review([{"path": "a.py"}], ast_snippets_by_file=self.AST)

        sent = session.post.call_args.kwargs["json"]["files"][0]["content"]
        assert sent.startswith("[Code under review]")
        assert "## File header context\n# line 1\nimport os" in sent
        assert "## Definitions\ndef helper(): ..." in sent

    def test_failing_lsp_builder_degrades(self):
        def broken(path, snippets):
            raise RuntimeError("language server crashed")

        session = MagicMock()
        session.post.return_value = http_response(data={"issues": [issue_for("a.py", line=4)]})
        reviewer = AIReviewer(
            make_config(),
            read_file=lambda p: "",
            session=session,
            trace=MagicMock(),
            lsp_reference_builder=broken,
            lsp_usages_builder=broken,
        )

        issues = reviewer.review([{"path": "a.py"}], ast_snippets_by_file=self.AST)

        sent = session.post.call_args.kwargs["json"]["files"][0]["content"]
        assert "## Definitions" not in sent
        assert "def f():" in sent
        assert len(issues) == 1

    def test_snippet_batching_splits_large_file(self):
        session = MagicMock()
        session.post.return_value = http_response(data={"issues": []})
        ast = {"a.py": AffectedScopeResult([AstSnippet(i * 10 + 1, i * 10 + 2, f"def f{i}(): pass") for i in range(4)])}

        make_reviewer(
            session, batching_mode="ast_snippet", ast_snippet_budget=2, batch_concurrency=1, include_lsp_context=False
        ).review([{"path": "a.py", "content": "full file"}], ast_snippets_by_file=ast)

        assert session.post.call_count == 2


class TestDiagnostics:
    def test_duplicate_of_diagnostic_dropped(self):
        session = MagicMock()
        session.post.return_value = http_response(
            data={"issues": [issue_for("a.py", 1, "os is imported but unused"), issue_for("a.py", 1, "Shadowed builtin")]}
        )

        issues = make_reviewer(session).review(
            FILES[:1], diagnostics_by_file={"a.py": [Diagnostic(line=1, message="'os' imported but unused")]}
        )

        assert [i.message for i in issues] == ["Shadowed builtin"]

    def test_sole_duplicate_kept_and_traced(self):
        trace = MagicMock()
        session = MagicMock()
        session.post.return_value = http_response(data={"issues": [issue_for("a.py", 1, "os imported but unused")]})

        issues = make_reviewer(session, trace=trace).review(
            FILES[:1], diagnostics_by_file={"./a.py": [Diagnostic(line=1, message="'os' imported but unused")]}
        )

        assert len(issues) == 1
        assert trace_events(trace, "diagnostics_filter_overdrop_fallback") == [{"issues": 1}]


class TestProcessSingleBatch:
    def test_already_processed_unit_skipped(self):
        client = MagicMock()
        ctx = ReviewContext(client=client, use_diff_content=False, allowed_lines={}, diagnostics_by_file={})
        ctx.processed_unit_ids.add("a.py#unit#1")
        unit = ReviewUnit("a.py#unit#1", "a.py", "x", 1, SourceType.FULL)

        assert AIReviewer(make_config(), trace=MagicMock()).process_single_batch([unit], 0, 1, ctx) == []
        client.call.assert_not_called()

    def test_unit_ids_recorded(self):
        client = MagicMock()
        client.call.return_value.issues = []
        ctx = ReviewContext(client=client, use_diff_content=False, allowed_lines={}, diagnostics_by_file={})
        unit = ReviewUnit("a.py#unit#1", "a.py", "x", 1, SourceType.FULL)

        AIReviewer(make_config(), trace=MagicMock()).process_single_batch([unit], 0, 1, ctx)

        assert ctx.processed_unit_ids == {"a.py#unit#1"}
        client.call.assert_called_once()


class TestPrintIssues:
    def test_no_issues(self, capsys):
        print_issues([])
        assert "No issues found." in capsys.readouterr().out

    def test_issue_lines(self, capsys):
        print_issues([Issue(file="a.py", line=3, column=1, message="Unused [x]", severity="warning")])
        out = capsys.readouterr().out
        assert "a.py:3:1" in out
        assert "WARNING" in out
        assert "Unused [x]" in out
