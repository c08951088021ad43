"""Tests for the CLI."""

import json
import re
from unittest.mock import patch

import responses
from click.testing import CliRunner

from tag_finder import cli
from tag_finder.cli import main

BASE = "https://registry.example.com"
TAGS_URL = f"{BASE}/v2/org/app/tags/list"
TARGET = "sha256:" + "a" * 64


def _mock_registry(digests):
    responses.add(responses.GET, TAGS_URL, json={"name": "org/app", "tags": list(digests)})
    for tag, digest in digests.items():
        responses.add(
            responses.GET,
            f"{BASE}/v2/org/app/manifests/{tag}",
            headers={"Docker-Content-Digest": digest},
        )


class TestCliBasics:
    """Test basic CLI behavior."""

    def test_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "IMAGE" in result.output
        assert "--workers" in result.output

    def test_version(self):
        runner = CliRunner()
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "tag-finder" in result.output
        assert re.search(r"\d+\.\d+\.\d+", result.output)

    def test_missing_digest(self):
        runner = CliRunner()
        result = runner.invoke(main, ["nginx"])
        assert result.exit_code != 0

    def test_workers_must_be_positive(self):
        runner = CliRunner()
        result = runner.invoke(main, ["nginx", TARGET, "--workers", "0"])
        assert result.exit_code != 0
        assert "workers" in result.output

    def test_invalid_image(self):
        runner = CliRunner()
        result = runner.invoke(main, ["", TARGET])
        assert result.exit_code == 1
        assert "Empty image reference" in result.output


class TestCliScan:
    """Test end-to-end scans against a mocked registry."""

    @responses.activate
    def test_match_found(self):
        _mock_registry({"1.0": TARGET, "latest": TARGET, "0.9": "sha256:" + "b" * 64})

        runner = CliRunner()
        result = runner.invoke(main, ["registry.example.com/org/app", "a" * 64])

        assert result.exit_code == 0
        assert "1.0" in result.output
        assert "latest" in result.output
        assert "Scan complete: scanned 3/3 tags" in result.output

    @responses.activate
    def test_no_match(self):
        _mock_registry({"0.9": "sha256:" + "b" * 64})

        runner = CliRunner()
        result = runner.invoke(main, ["registry.example.com/org/app", TARGET])

        assert result.exit_code == 1
        assert "No tags found matching the digest." in result.output

    @responses.activate
    def test_list_failure_is_fatal(self):
        responses.add(responses.GET, TAGS_URL, status=500, body="oops")

        runner = CliRunner()
        result = runner.invoke(main, ["registry.example.com/org/app", TARGET])

        assert result.exit_code == 1
        assert "Failed to list tags" in result.output

    @responses.activate
    def test_per_tag_errors_only_when_verbose(self):
        responses.add(responses.GET, TAGS_URL, json={"tags": ["latest", "gone"]})
        responses.add(
            responses.GET,
            f"{BASE}/v2/org/app/manifests/latest",
            headers={"Docker-Content-Digest": TARGET},
        )
        responses.add(responses.GET, f"{BASE}/v2/org/app/manifests/gone", status=404)

        runner = CliRunner()
        quiet = runner.invoke(main, ["registry.example.com/org/app", TARGET])
        verbose = runner.invoke(main, ["registry.example.com/org/app", TARGET, "-v"])

        assert quiet.exit_code == 0
        assert "✗ gone" not in quiet.output
        assert verbose.exit_code == 0
        assert "✗ gone" in verbose.output

    @responses.activate
    def test_json_report(self):
        _mock_registry({"latest": TARGET, "old": "sha256:" + "b" * 64})

        runner = CliRunner()
        result = runner.invoke(
            main, ["registry.example.com/org/app", TARGET, "--json", "-w", "2"]
        )

        assert result.exit_code == 0
        report = json.loads(result.output[result.output.index("{"):])
        assert report["request"]["registry"] == "registry.example.com"
        assert report["request"]["repository"] == "org/app"
        assert report["request"]["digest"] == TARGET
        assert report["request"]["workers"] == 2
        assert report["summary"]["total"] == 2
        assert report["summary"]["processed"] == 2
        assert report["summary"]["cancelled"] is False
        assert report["matches"] == ["latest"]
        assert report["errors"] == []

    @responses.activate
    def test_workers_from_environment(self):
        _mock_registry({"latest": TARGET})

        runner = CliRunner()
        with patch("tag_finder.cli.check_digests", wraps=cli.check_digests) as spy:
            result = runner.invoke(
                main,
                ["registry.example.com/org/app", TARGET],
                env={"TAG_FINDER_WORKERS": "3"},
            )

        assert result.exit_code == 0
        assert spy.call_args.args[4] == 3

    @responses.activate
    def test_progress_is_reported(self):
        _mock_registry({f"t{i}": "sha256:" + "b" * 64 for i in range(20)})

        runner = CliRunner()
        result = runner.invoke(main, ["registry.example.com/org/app", TARGET, "-w", "4"])

        assert result.exit_code == 1
        progress = re.findall(r"Progress: (\d+)/20 tags", result.output)
        assert len(progress) == 10
        assert progress[0] == "2"
        assert progress[-1] == "20"


class TestCliInterrupt:
    """Test Ctrl+C handling during a scan."""

    @staticmethod
    def _interrupting(times):
        """Wrap the real drain so its first *times* calls raise KeyboardInterrupt."""
        real_drain = cli._drain
        calls = []

        def drain(stream, summary, verbose):
            calls.append(stream)
            if len(calls) <= times:
                raise KeyboardInterrupt
            real_drain(stream, summary, verbose)

        return drain, calls

    @responses.activate
    def test_interrupt_reports_partial_scan(self):
        _mock_registry({f"t{i}": TARGET for i in range(5)})
        drain, calls = self._interrupting(1)

        runner = CliRunner()
        with patch("tag_finder.cli._drain", side_effect=drain):
            result = runner.invoke(main, ["registry.example.com/org/app", TARGET, "--json"])

        assert "Interrupted" in result.output
        assert len(calls) == 2
        assert calls[0].cancelled
        assert calls[0].closed

        report = json.loads(result.output[result.output.index("{"):])
        assert report["summary"]["cancelled"] is True
        assert report["summary"]["total"] == 5
        assert report["summary"]["processed"] <= report["summary"]["total"]
        assert len(report["matches"]) == report["summary"]["matches"]

    @responses.activate
    def test_repeated_interrupt_keeps_draining(self):
        _mock_registry({f"t{i}": TARGET for i in range(5)})
        drain, calls = self._interrupting(3)

        runner = CliRunner()
        with patch("tag_finder.cli._drain", side_effect=drain):
            result = runner.invoke(main, ["registry.example.com/org/app", TARGET])

        assert not isinstance(result.exception, KeyboardInterrupt)
        assert result.output.count("Interrupted") == 1
        assert len(calls) == 4
        assert calls[0].closed
        assert "scanned" in result.output
