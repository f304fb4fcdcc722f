"""Tests for CLI entrypoint wiring."""

from __future__ import annotations

from contextlib import redirect_stderr, redirect_stdout
import io
from pathlib import Path
import unittest
from unittest.mock import AsyncMock, patch

from buildchat.__main__ import main
from buildchat.exceptions import TransportError

from fake_backend import FakeBackend, event_stream, sse

MISSING_CONFIG = str(Path("/nonexistent/buildchat/config.toml"))


def run_cli(*argv: str) -> tuple[int, str, str]:
    stdout, stderr = io.StringIO(), io.StringIO()
    code = 0
    with redirect_stdout(stdout), redirect_stderr(stderr):
        try:
            main(list(argv))
        except SystemExit as exc:
            code = int(exc.code or 0)
    return code, stdout.getvalue(), stderr.getvalue()


class MainEntrypointTests(unittest.TestCase):
    """Validate top-level main() behavior."""

    def test_version_flag_prints_version(self) -> None:
        code, out, _ = run_cli("--version")
        self.assertEqual(code, 0)
        self.assertTrue(out.startswith("buildchat "))

    def test_domain_error_exits_with_status_one(self) -> None:
        with patch(
            "buildchat.__main__._run",
            new=AsyncMock(side_effect=TransportError(None, "Unable to reach backend")),
        ):
            code, _, err = run_cli("conversations")
        self.assertEqual(code, 1)
        self.assertIn("Unable to reach backend", err)

    def test_conversations_lists_backend_rows(self) -> None:
        backend = FakeBackend()
        backend.json_route(
            "GET",
            "/conversations/",
            [{"id": "c1", "title": "Schema", "created_at": 0, "message_count": 4}],
        )
        with patch("buildchat.__main__.build_client", return_value=backend.client()), patch(
            "buildchat.__main__.configure_logging"
        ):
            code, out, _ = run_cli("--config", MISSING_CONFIG, "conversations")
        self.assertEqual(code, 0)
        self.assertEqual(out.strip(), "c1\t4\tSchema")

    def test_build_exit_status_follows_completion(self) -> None:
        backend = FakeBackend()
        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(
                sse("log", {"type": "log", "line": "tsc: 1 error"}),
                sse("complete", {"type": "complete", "success": False, "message": "failed"}),
            ),
        )
        with patch("buildchat.__main__.build_client", return_value=backend.client()), patch(
            "buildchat.__main__.configure_logging"
        ):
            code, out, err = run_cli("--config", MISSING_CONFIG, "build", "npm run build")
        self.assertEqual(code, 1)
        self.assertIn("tsc: 1 error", out)
        self.assertIn("failed", err)

    def test_build_stream_without_completion_is_an_error(self) -> None:
        backend = FakeBackend()
        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(sse("log", {"type": "log", "line": "compiling"})),
        )
        with patch("buildchat.__main__.build_client", return_value=backend.client()), patch(
            "buildchat.__main__.configure_logging"
        ):
            code, out, err = run_cli("--config", MISSING_CONFIG, "build", "npm run build")
        self.assertEqual(code, 1)
        self.assertIn("compiling", out)
        self.assertIn("error:", err)
        self.assertIn("complete event", err)

    def test_missing_attachment_exits_with_status_one(self) -> None:
        backend = FakeBackend()
        backend.json_route("POST", "/conversations/", {"conversation_id": "c1", "title": "x"})
        with patch("buildchat.__main__.build_client", return_value=backend.client()), patch(
            "buildchat.__main__.configure_logging"
        ):
            code, _, err = run_cli(
                "--config",
                MISSING_CONFIG,
                "send",
                "see file",
                "--attach",
                "/nonexistent/buildchat/notes.txt",
            )
        self.assertEqual(code, 1)
        self.assertIn("error: Cannot attach /nonexistent/buildchat/notes.txt", err)
        self.assertEqual(backend.requests, [])


if __name__ == "__main__":
    unittest.main()
