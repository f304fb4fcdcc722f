"""Tests for the TaskManager lifecycle helper."""

from __future__ import annotations

import asyncio
import unittest

from buildchat.task_manager import TaskManager


class TaskManagerTests(unittest.IsolatedAsyncioTestCase):
    """Validate named and anonymous task lifecycle management."""

    async def test_spawn_named_and_cancel_by_name(self) -> None:
        tm = TaskManager()
        cancelled: list[bool] = []

        async def _worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        task = tm.spawn(_worker(), name="send:c1")
        await asyncio.sleep(0)  # Let the task start.
        self.assertIs(tm.get("send:c1"), task)
        self.assertTrue(tm.is_running("send:c1"))

        await tm.cancel("send:c1")
        self.assertTrue(task.done())
        self.assertTrue(cancelled)
        self.assertIsNone(tm.get("send:c1"))

    async def test_spawn_refuses_busy_name(self) -> None:
        tm = TaskManager()
        gate = asyncio.Event()

        async def _worker() -> None:
            await gate.wait()

        tm.spawn(_worker(), name="dev_server:m1")
        second = _worker()
        with self.assertRaises(RuntimeError):
            tm.spawn(second, name="dev_server:m1")
        gate.set()
        await tm.cancel_all()

    async def test_named_task_releases_slot_when_done(self) -> None:
        tm = TaskManager()

        async def _quick() -> int:
            return 1

        task = tm.spawn(_quick(), name="x")
        self.assertEqual(await task, 1)
        await asyncio.sleep(0)  # Let done callbacks run.
        self.assertIsNone(tm.get("x"))
        tm.spawn(_quick(), name="x")

    async def test_cancel_nonexistent_name_is_noop(self) -> None:
        tm = TaskManager()
        await tm.cancel("does_not_exist")

    async def test_failed_task_is_logged(self) -> None:
        tm = TaskManager()

        async def _boom() -> None:
            raise ValueError("boom")

        with self.assertLogs("buildchat.task_manager", level="WARNING") as logs:
            task = tm.spawn(_boom())
            with self.assertRaises(ValueError):
                await task
            await asyncio.sleep(0)
        self.assertTrue(any("task.exception" in line for line in logs.output))

    async def test_cancel_all_handles_mixed_tasks(self) -> None:
        tm = TaskManager()
        results: list[str] = []

        async def _named_worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                results.append("named")
                raise

        async def _anon_worker() -> None:
            try:
                await asyncio.sleep(9999)
            except asyncio.CancelledError:
                results.append("anon")
                raise

        tm.spawn(_named_worker(), name="n1")
        tm.add(asyncio.create_task(_anon_worker()))
        await asyncio.sleep(0)  # Let the tasks start.
        await tm.cancel_all()
        self.assertIn("named", results)
        self.assertIn("anon", results)


if __name__ == "__main__":
    unittest.main()
