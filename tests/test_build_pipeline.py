"""Tests for the gated write/build/run/export pipeline."""

from __future__ import annotations

import asyncio
from pathlib import Path
import tempfile
import unittest

import httpx

from buildchat.build_pipeline import (
    BuildOutcome,
    BuildPipeline,
    BuildStage,
    collect_build_output,
)
from buildchat.events import CompleteEvent, ErrorEvent, LogEvent
from buildchat.exceptions import (
    ProtocolMismatchError,
    StageUnavailableError,
    TaskFailedError,
)

from fake_backend import FakeBackend, event_stream, sse

XML = "<entities><entity name='User'/></entities>"


def make_backend() -> FakeBackend:
    backend = FakeBackend()
    backend.json_route("POST", "/orm/entity", {"success": True, "message": "written"})
    backend.route(
        "POST",
        "/build/execute/stream",
        lambda _request: event_stream(
            sse("log", {"type": "log", "line": "compiling"}),
            sse("log", {"type": "log", "line": "linking"}),
            sse("complete", {"type": "complete", "success": True, "message": "built"}),
        ),
    )
    return backend


class StageGatingTests(unittest.IsolatedAsyncioTestCase):
    """Validate that each stage unlocks only after its predecessor."""

    async def test_only_write_is_available_initially(self) -> None:
        pipeline = BuildPipeline(make_backend().client())
        self.assertEqual(pipeline.available_stages("m1"), [BuildStage.WRITE])

        with self.assertRaises(StageUnavailableError):
            await pipeline.build("m1", "npm run build")

    async def test_stages_unlock_in_order(self) -> None:
        pipeline = BuildPipeline(make_backend().client())

        await pipeline.write("m1", XML)
        self.assertEqual(
            pipeline.available_stages("m1"), [BuildStage.WRITE, BuildStage.BUILD]
        )
        await pipeline.build("m1", "npm run build")
        self.assertEqual(
            pipeline.available_stages("m1"),
            [BuildStage.WRITE, BuildStage.BUILD, BuildStage.RUN],
        )
        self.assertEqual(pipeline.available_stages("m2"), [BuildStage.WRITE])

    async def test_failed_write_does_not_unlock_build(self) -> None:
        backend = FakeBackend()
        backend.json_route("POST", "/orm/entity", {"success": False, "message": "bad xml"})
        pipeline = BuildPipeline(backend.client())

        with self.assertRaises(TaskFailedError):
            await pipeline.write("m1", XML)
        self.assertEqual(pipeline.available_stages("m1"), [BuildStage.WRITE])

    async def test_submit_xml_polls_build_task(self) -> None:
        backend = FakeBackend()
        backend.json_route("POST", "/upload", {"task_id": "b1"})
        backend.json_route(
            "GET", "/tasks/b1", {"task_id": "b1", "status": "success", "result": {"ok": 1}}
        )
        pipeline = BuildPipeline(backend.client(), poll_interval=0)

        task = await pipeline.submit_xml("m1", XML)
        self.assertEqual(task.result, {"ok": 1})
        self.assertIn(BuildStage.RUN, pipeline.available_stages("m1"))


class BuildStreamTests(unittest.IsolatedAsyncioTestCase):
    """Validate streamed build output handling."""

    async def test_log_lines_arrive_in_order_before_completion(self) -> None:
        pipeline = BuildPipeline(make_backend().client())
        await pipeline.write("m1", XML)
        seen: list[str] = []

        outcome = await pipeline.build("m1", "npm run build", on_log=seen.append)

        self.assertTrue(outcome.success)
        self.assertEqual(outcome.message, "built")
        self.assertEqual(outcome.lines, ["compiling", "linking"])
        self.assertEqual(seen, ["compiling", "linking"])

    async def test_unsuccessful_completion_keeps_run_locked(self) -> None:
        backend = make_backend()
        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(
                sse("log", {"type": "log", "line": "error TS2304"}),
                sse("complete", {"type": "complete", "success": False}),
            ),
        )
        pipeline = BuildPipeline(backend.client())
        await pipeline.write("m1", XML)

        outcome = await pipeline.build("m1", "npm run build")
        self.assertFalse(outcome.success)
        self.assertNotIn(BuildStage.RUN, pipeline.available_stages("m1"))

    async def test_stream_without_complete_is_protocol_mismatch(self) -> None:
        backend = make_backend()
        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(sse("log", {"type": "log", "line": "x"})),
        )
        pipeline = BuildPipeline(backend.client())
        await pipeline.write("m1", XML)

        with self.assertRaises(ProtocolMismatchError):
            await pipeline.build("m1", "npm run build")

    async def test_collect_build_output_skips_recoverable_errors(self) -> None:
        async def events():
            yield LogEvent("one")
            yield ErrorEvent("bad frame", recoverable=True)
            yield LogEvent("two")
            yield CompleteEvent(success=True, message="done")
            yield LogEvent("after completion")

        with self.assertLogs("buildchat.build_pipeline", level="WARNING") as logs:
            outcome = await collect_build_output(events())

        self.assertEqual(outcome, BuildOutcome(True, "done", ["one", "two"]))
        self.assertTrue(any("build.stream.event_skipped" in line for line in logs.output))

    async def test_collect_build_output_raises_on_fatal_error(self) -> None:
        async def events():
            yield LogEvent("one")
            yield ErrorEvent("compiler crashed")

        lines: list[str] = []
        with self.assertRaises(TaskFailedError):
            await collect_build_output(events(), lines=lines)
        self.assertEqual(lines, ["one"])


class DevServerTests(unittest.IsolatedAsyncioTestCase):
    """Validate run/stop with an independent cancellation token."""

    async def test_run_then_stop_dev_server(self) -> None:
        backend = make_backend()
        gate = asyncio.Event()
        backend.json_route("POST", "/build/stop", {"stopped": True})
        pipeline = BuildPipeline(backend.client())
        await pipeline.write("m1", XML)
        await pipeline.build("m1", "npm run build")

        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(
                sse("log", {"type": "log", "line": "listening on :5173"}), gate=gate
            ),
        )

        task = await pipeline.run("m1", "npm run dev")
        while not pipeline.dev_server_log("m1"):
            await asyncio.sleep(0)

        self.assertEqual(
            pipeline.available_stages("m1"),
            [BuildStage.WRITE, BuildStage.BUILD, BuildStage.EXPORT],
        )
        self.assertTrue(await pipeline.stop("m1"))

        outcome = await task
        self.assertFalse(outcome.success)
        self.assertEqual(outcome.lines, ["listening on :5173"])
        self.assertIn("/build/stop", backend.paths())
        self.assertIn(BuildStage.RUN, pipeline.available_stages("m1"))
        self.assertFalse(await pipeline.stop("m1"))
        gate.set()

    async def test_run_refused_while_previous_server_task_is_alive(self) -> None:
        backend = make_backend()
        pipeline = BuildPipeline(backend.client())
        await pipeline.write("m1", XML)
        await pipeline.build("m1", "npm run build")
        gate = asyncio.Event()
        lingering = pipeline.task_manager.spawn(gate.wait(), name="dev_server:m1")

        with self.assertRaises(StageUnavailableError):
            await pipeline.run("m1", "npm run dev")

        self.assertEqual(pipeline.running, set())
        self.assertEqual(pipeline.dev_server_log("m1"), [])
        self.assertFalse(await pipeline.stop("m1"))
        self.assertIn(BuildStage.RUN, pipeline.available_stages("m1"))
        self.assertEqual(backend.paths("POST").count("/build/execute/stream"), 1)
        gate.set()
        await lingering

    async def test_export_requires_running_server(self) -> None:
        pipeline = BuildPipeline(make_backend().client())
        with self.assertRaises(StageUnavailableError):
            await pipeline.export("m1", {})

    async def test_export_saves_binary_to_directory(self) -> None:
        backend = make_backend()
        gate = asyncio.Event()
        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(
                sse("complete", {"type": "complete", "success": True}),
            ),
        )
        backend.route(
            "POST",
            "/build/export/excel",
            lambda _request: httpx.Response(
                200,
                headers={
                    "content-type": "application/octet-stream",
                    "content-disposition": 'attachment; filename="users.xlsx"',
                },
                content=b"PK\x03\x04",
            ),
        )
        backend.json_route("POST", "/build/stop", {"stopped": True})
        pipeline = BuildPipeline(backend.client())
        await pipeline.write("m1", XML)
        await pipeline.build("m1", "npm run build")

        backend.route(
            "POST",
            "/build/execute/stream",
            lambda _request: event_stream(
                sse("log", {"type": "log", "line": "ready"}), gate=gate
            ),
        )
        await pipeline.run("m1", "npm run dev")
        while not pipeline.dev_server_log("m1"):
            await asyncio.sleep(0)

        with tempfile.TemporaryDirectory() as temp_dir:
            result = await pipeline.export("m1", {"entity": "User"}, destination=temp_dir)
            saved = Path(temp_dir) / "users.xlsx"
            self.assertEqual(result.filename, "users.xlsx")
            self.assertEqual(saved.read_bytes(), b"PK\x03\x04")

        await pipeline.shutdown()
        self.assertEqual(pipeline.running, set())
        gate.set()


if __name__ == "__main__":
    unittest.main()
