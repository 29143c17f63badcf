import asyncio
import tempfile
import time
import unittest
from pathlib import Path


def _drain(sub):
    out = []
    while not sub.q.empty():
        msg = sub.q.get_nowait()
        if msg is not None and msg["event"] != "log":
            out.append(msg)
    return out


async def _wait_pending(gate, n: int = 1) -> None:
    for _ in range(200):
        if gate.pending_count >= n:
            return
        await asyncio.sleep(0)
    raise AssertionError("approval request was never registered")


class TestApprovalGate(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self._td = tempfile.TemporaryDirectory()
        self.path = Path(self._td.name) / "settings.yaml"

    def tearDown(self) -> None:
        self._td.cleanup()

    def _gate(self, *, timeout_s: float = 90.0, auto_accept: bool = False):
        from rbxrelay.daemon.approval import ApprovalGate
        from rbxrelay.daemon.broadcast import EventBroadcaster
        from rbxrelay.kernel.settings import SettingsStore

        store = SettingsStore(path=self.path)
        store.set_auto_accept(auto_accept)
        broadcaster = EventBroadcaster()
        gate = ApprovalGate(store, broadcaster, timeout_s=timeout_s)
        return gate, broadcaster.subscribe()

    async def test_auto_accept_approves_everything(self) -> None:
        gate, _ = self._gate(auto_accept=True)
        self.assertTrue(gate.evaluate("delete"))
        self.assertEqual(await gate.check("c1", "delete", {"path": "workspace.Part"}), "approved")
        self.assertEqual(gate.pending_count, 0)

    async def test_whitelisted_tool_skips_approval(self) -> None:
        gate, _ = self._gate()
        self.assertTrue(gate.evaluate("tree"))
        self.assertFalse(gate.evaluate("delete"))
        self.assertEqual(await gate.check("c1", "tree", {"path": "workspace"}), "approved")

    async def test_whitelist_toggle_twice_restores_membership(self) -> None:
        from rbxrelay.kernel.settings import SettingsStore

        gate, sub = self._gate()
        before = set(gate.settings.whitelist)

        self.assertTrue(gate.toggle_whitelist("delete"))
        self.assertTrue(gate.evaluate("delete"))
        self.assertFalse(gate.toggle_whitelist("delete"))
        self.assertFalse(gate.evaluate("delete"))
        self.assertEqual(set(gate.settings.whitelist), before)

        self.assertFalse(gate.toggle_whitelist("tree"))
        self.assertTrue(gate.toggle_whitelist("tree"))
        self.assertEqual(set(gate.settings.whitelist), before)
        self.assertEqual(set(SettingsStore(path=self.path).whitelist), before)

        events = [m["event"] for m in _drain(sub)]
        self.assertEqual(events, ["whitelistUpdate"] * 4)

    async def test_interactive_approval(self) -> None:
        gate, sub = self._gate()
        task = asyncio.create_task(gate.check("c1", "delete", {"path": "workspace.Part"}))
        await _wait_pending(gate)

        pending = gate.pending()
        self.assertEqual([p.id for p in pending], ["c1"])
        self.assertTrue(gate.resolve("c1", True))
        self.assertEqual(await task, "approved")
        self.assertFalse(gate.resolve("c1", False))
        self.assertEqual(gate.pending_count, 0)

        events = _drain(sub)
        self.assertEqual([m["event"] for m in events], ["approvalRequest", "approvalProcessed"])
        self.assertEqual(events[0]["data"]["tool"], "delete")
        self.assertEqual(events[1]["data"], {"id": "c1", "outcome": "approved"})

    async def test_interactive_rejection(self) -> None:
        gate, _ = self._gate()
        task = asyncio.create_task(gate.check("c2", "delete", {"path": "workspace.Part"}))
        await _wait_pending(gate)
        self.assertTrue(gate.resolve("c2", False))
        self.assertEqual(await task, "rejected")

    async def test_timeout_resolves_exactly_once(self) -> None:
        gate, sub = self._gate(timeout_s=0.05)
        outcome = await gate.check("c3", "delete", {"path": "workspace.Part"})

        self.assertEqual(outcome, "timeout")
        self.assertEqual(gate.pending_count, 0)
        self.assertFalse(gate.resolve("c3", True))
        processed = [m for m in _drain(sub) if m["event"] == "approvalProcessed"]
        self.assertEqual(len(processed), 1)
        self.assertEqual(processed[0]["data"]["outcome"], "timeout")

    async def test_expire_stale_forces_timeout(self) -> None:
        gate, _ = self._gate(timeout_s=90)
        task = asyncio.create_task(gate.check("c4", "delete", {"path": "workspace.Part"}))
        await _wait_pending(gate)

        later = time.monotonic() + 91
        self.assertEqual(gate.expire_stale(now=later), 1)
        self.assertEqual(gate.expire_stale(now=later), 0)
        self.assertEqual(await task, "timeout")
        self.assertEqual(gate.pending_count, 0)

    async def test_unknown_id_is_not_resolved(self) -> None:
        gate, _ = self._gate()
        self.assertFalse(gate.resolve("missing", True))

    async def test_setting_changes_are_broadcast(self) -> None:
        gate, sub = self._gate(auto_accept=True)
        gate.set_auto_accept(False)
        gate.set_strict_mode(True)
        events = [(m["event"], m["data"]) for m in _drain(sub)]
        self.assertEqual(events, [("autoAcceptUpdate", False), ("strictModeUpdate", True)])


if __name__ == "__main__":
    unittest.main()
