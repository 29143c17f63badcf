import asyncio
import tempfile
import unittest
from pathlib import Path


class TestRelayCore(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        from rbxrelay.daemon.core import RelayCore
        from rbxrelay.kernel.settings import SettingsStore

        self._td = tempfile.TemporaryDirectory()
        path = Path(self._td.name) / "settings.yaml"
        path.write_text("relay:\n  dispatch_timeout: 2\n  approval_timeout: 2\n", encoding="utf-8")
        self.core = RelayCore(SettingsStore(path=path))
        self.plugin_seen = []

    async def asyncTearDown(self) -> None:
        await self.core.stop()
        self._td.cleanup()

    def _plugin(self, reply):
        """Fake Studio plugin: answers every picked-up command with reply(cmd)."""

        async def _loop() -> None:
            while True:
                cmd = await self.core.pickup(1)
                if cmd is None:
                    continue
                self.plugin_seen.append(cmd)
                self.core.post_result(cmd.id, reply(cmd))

        task = asyncio.create_task(_loop())
        self.addCleanup(task.cancel)
        return task

    async def test_direct_round_trip_decodes_script_text(self) -> None:
        from rbxrelay.kernel.tools import encode_transport_fields

        self._plugin(lambda cmd: "[SUCCESS] edited")
        args = encode_transport_fields(
            "editScript",
            {"path": "game.ServerScriptService.Main", "old_string": "local a = 1", "new_string": "local a = 2"},
        )
        res = await self.core.execute_direct("editScript", args)

        self.assertTrue(res.success)
        self.assertEqual(res.output, "[SUCCESS] edited")
        sent = self.plugin_seen[0].args
        self.assertEqual(sent["old_string"], "local a = 1")
        self.assertEqual(sent["new_string"], "local a = 2")

    async def test_validation_failure_is_never_dispatched(self) -> None:
        res = await self.core.execute_direct("tree", {})
        self.assertFalse(res.success)
        self.assertEqual(res.code, "validation_error")
        self.assertEqual(self.core.rendezvous.backlog_size, 0)

        res = await self.core.execute_direct("teleport", {"path": "x"})
        self.assertFalse(res.success)
        self.assertEqual(res.code, "unknown_tool")

    async def test_rejected_call_returns_error(self) -> None:
        self.core.gate.set_auto_accept(False)
        task = asyncio.create_task(self.core.execute_direct("delete", {"path": "workspace.Part"}))
        for _ in range(100):
            if self.core.gate.pending_count:
                break
            await asyncio.sleep(0)
        pending = self.core.gate.pending()[0]
        self.core.gate.resolve(pending.id, False)

        res = await task
        self.assertFalse(res.success)
        self.assertEqual(res.code, "rejected")
        self.assertEqual(self.core.rendezvous.backlog_size, 0)

    async def test_dispatch_timeout_is_a_structured_error(self) -> None:
        self.core.correlator.dispatch_timeout_s = 0.05
        res = await self.core.execute_direct("tree", {"path": "workspace"})
        self.assertFalse(res.success)
        self.assertEqual(res.code, "timeout")

    async def test_remote_error_is_unwrapped(self) -> None:
        self._plugin(lambda cmd: "[ERROR] Object not found: workspace.Nope")
        res = await self.core.execute_direct("delete", {"path": "workspace.Nope"})
        self.assertFalse(res.success)
        self.assertEqual(res.error, "Object not found: workspace.Nope")

    async def test_strict_mode_requires_read_before_edit(self) -> None:
        self._plugin(lambda cmd: "ok")
        self.core.gate.set_strict_mode(True)
        edit = {"path": "game.Workspace.Script", "old_string": "a", "new_string": "b"}

        res = await self.core.execute_direct("editScript", edit)
        self.assertFalse(res.success)
        self.assertEqual(res.code, "strict_mode")
        self.assertEqual(self.plugin_seen, [])

        read = await self.core.execute_direct("readLine", {"path": "game.Workspace.Other"})
        self.assertTrue(read.success)
        res = await self.core.execute_direct("editScript", edit)
        self.assertEqual(res.code, "strict_mode")

        await self.core.execute_direct("readLine", {"path": "game.Workspace.Script"})
        res = await self.core.execute_direct("editScript", edit)
        self.assertTrue(res.success)

    async def _legacy_outcome(self, tool, args):
        rid = self.core.submit_legacy(tool, args)["id"]
        for _ in range(300):
            status = self.core.legacy.status(rid)["status"]
            if status in ("completed", "error"):
                return self.core.legacy.result(rid)
            await asyncio.sleep(0.01)
        raise AssertionError(f"legacy request {rid} never finished")

    async def test_legacy_intake_honours_strict_mode(self) -> None:
        from rbxrelay.kernel.tools import encode_transport_fields

        self._plugin(lambda cmd: "ok")
        self.core.gate.set_strict_mode(True)
        edit = encode_transport_fields(
            "editScript", {"path": "game.Workspace.Script", "old_string": "a", "new_string": "b"}
        )

        res = await self._legacy_outcome("editScript", edit)
        self.assertEqual(res["status"], "error")
        self.assertIn("Strict mode", res["error"])
        self.assertEqual(self.plugin_seen, [])

        res = await self._legacy_outcome("readLine", {"path": "game.Workspace.Script"})
        self.assertEqual(res["status"], "completed")
        res = await self._legacy_outcome("editScript", edit)
        self.assertEqual(res["status"], "completed")
        self.assertEqual(self.plugin_seen[-1].args["new_string"], "b")

        # The legacy edit counts as the last call for the direct path too.
        direct = await self.core.execute_direct("editScript", edit)
        self.assertEqual(direct.code, "strict_mode")

    async def test_legacy_approval_shows_decoded_text(self) -> None:
        from rbxrelay.kernel.tools import encode_transport_fields

        self.core.gate.set_auto_accept(False)
        args = encode_transport_fields(
            "create", {"className": "Script", "name": "S", "parent": "workspace", "source": "print('hi')"}
        )
        rid = self.core.submit_legacy("create", args)["id"]
        for _ in range(100):
            if self.core.gate.pending_count:
                break
            await asyncio.sleep(0.01)

        pending = self.core.gate.pending()[0]
        self.assertEqual(pending.id, rid)
        self.assertEqual(pending.args["source"], "print('hi')")
        self.core.gate.resolve(rid, False)

    async def test_multi_runs_every_call(self) -> None:
        self._plugin(lambda cmd: f"{cmd.tool} done")
        res = await self.core.execute(
            "multi",
            {
                "calls": [
                    {"tool": "tree", "args": {"path": "workspace"}},
                    {"tool": "delete", "args": {"path": ""}},
                    {"tool": "getScriptInfo", "args": {"path": "game.Workspace.Script"}},
                ]
            },
        )
        self.assertFalse(res.success)
        self.assertIn("[1] TREE: ✅ Success\ntree done", res.output)
        self.assertIn("[2] DELETE: ❌ Error", res.output)
        self.assertIn("[3] GETSCRIPTINFO: ✅ Success\ngetScriptInfo done", res.output)
        self.assertIn("Summary: 2 succeeded, 1 failed", res.output)
        self.assertEqual([c.tool for c in self.plugin_seen], ["tree", "getScriptInfo"])

    async def test_multi_requires_calls(self) -> None:
        res = await self.core.execute("multi", {"calls": []})
        self.assertFalse(res.success)
        self.assertEqual(res.code, "validation_error")

    async def test_stopped_core_refuses_work(self) -> None:
        await self.core.start()
        await self.core.stop()
        res = await self.core.execute_direct("tree", {"path": "workspace"})
        self.assertFalse(res.success)
        self.assertEqual(res.code, "unavailable")

    async def test_queue_info_reports_backlog(self) -> None:
        self.core.correlator.dispatch_timeout_s = 0.05
        await self.core.execute_direct("tree", {"path": "workspace"})
        info = self.core.queue_info()
        self.assertEqual(len(info["backlog"]), 1)
        self.assertEqual(info["backlog"][0]["tool"], "tree")
        self.assertFalse(info["agent_connected"])


if __name__ == "__main__":
    unittest.main()
