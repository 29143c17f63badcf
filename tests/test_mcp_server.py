import base64
import unittest
from unittest.mock import patch


def _b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


class TestMcpToolCalls(unittest.TestCase):
    def test_tree_posts_to_direct_endpoint(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        captured = {}

        def _fake_post(endpoint, body, **_kw):
            captured["endpoint"] = endpoint
            captured["body"] = body
            return {"success": True, "output": "workspace\n  Baseplate"}

        with patch.object(mcp_server, "_post", side_effect=_fake_post):
            out = mcp_server.handle_tool_call("tree", {"path": "workspace"})

        self.assertEqual(captured["endpoint"], "/api/tree/direct")
        self.assertEqual(captured["body"], {"path": "workspace"})
        self.assertEqual(out, {"text": "workspace\n  Baseplate", "isError": False})

    def test_script_text_is_base64_encoded(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        captured = {}

        def _fake_post(endpoint, body, **_kw):
            captured["body"] = body
            return {"success": True, "output": _b64("Edited 1 occurrence")}

        args = {"path": "game.Workspace.Script", "old_string": 'print("a")\n', "new_string": 'print("ü")\n'}
        with patch.object(mcp_server, "_post", side_effect=_fake_post):
            out = mcp_server.handle_tool_call("editScript", args)

        body = captured["body"]
        self.assertEqual(body["path"], "game.Workspace.Script")
        self.assertEqual(body["old_string"], _b64('print("a")\n'))
        self.assertEqual(body["new_string"], _b64('print("ü")\n'))
        self.assertEqual(out["text"], "Edited 1 occurrence")

    def test_insert_lines_encodes_each_line(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        captured = {}

        def _fake_post(endpoint, body, **_kw):
            captured["body"] = body
            return {"success": True, "output": "[SUCCESS] Inserted 2 lines"}

        with patch.object(mcp_server, "_post", side_effect=_fake_post):
            out = mcp_server.handle_tool_call(
                "insertLines", {"path": "game.Workspace.Script", "lineNumber": 2, "lines": ["local a", "local b"]}
            )
        self.assertEqual(captured["body"]["lines"], [_b64("local a"), _b64("local b")])
        self.assertEqual(out["text"], "[SUCCESS] Inserted 2 lines")

    def test_missing_argument_fails_without_calling_relay(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        with patch.object(mcp_server, "_post") as fake:
            with self.assertRaises(mcp_server.MCPError) as ctx:
                mcp_server.handle_tool_call("delete", {"path": ""})
        fake.assert_not_called()
        self.assertEqual(ctx.exception.code, "validation_error")

    def test_relay_failure_becomes_mcp_error(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        with patch.object(mcp_server, "_post", return_value={"success": False, "error": "Request was rejected by the user"}):
            with self.assertRaises(mcp_server.MCPError) as ctx:
                mcp_server.handle_tool_call("delete", {"path": "workspace.Part"})
        self.assertEqual(ctx.exception.message, "delete failed: Request was rejected by the user")

    def test_unknown_tool(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        with self.assertRaises(mcp_server.MCPError) as ctx:
            mcp_server.handle_tool_call("teleport", {})
        self.assertEqual(ctx.exception.code, "unknown_tool")

    def test_multi_reports_partial_failure(self) -> None:
        from rbxrelay.ports.mcp import server as mcp_server

        captured = {}
        report = "=== Multi Tool Results (2 calls) ===\n\n...\n\nSummary: 1 succeeded, 1 failed"

        def _fake_post(endpoint, body, **_kw):
            captured["endpoint"] = endpoint
            captured["body"] = body
            return {"success": False, "error": report, "output": report}

        calls = [
            {"tool": "create", "args": {"className": "Script", "name": "S", "parent": "workspace", "source": "print(1)"}},
            {"tool": "delete", "args": {"path": "workspace.Gone"}},
        ]
        with patch.object(mcp_server, "_post", side_effect=_fake_post):
            out = mcp_server.handle_tool_call("multi", {"calls": calls})

        self.assertEqual(captured["endpoint"], "/api/multi/direct")
        self.assertEqual(captured["body"]["calls"][0]["args"]["source"], _b64("print(1)"))
        self.assertEqual(out, {"text": report, "isError": True})

    def test_unreachable_relay(self) -> None:
        import urllib.error

        from rbxrelay.ports.mcp import server as mcp_server

        with patch.object(mcp_server.urllib.request, "urlopen", side_effect=urllib.error.URLError("refused")):
            with self.assertRaises(mcp_server.MCPError) as ctx:
                mcp_server.handle_tool_call("tree", {"path": "workspace"})
        self.assertEqual(ctx.exception.code, "transport_error")


class TestMcpJsonRpc(unittest.TestCase):
    def test_initialize_and_list(self) -> None:
        from rbxrelay.ports.mcp.main import handle_request

        init = handle_request({"jsonrpc": "2.0", "id": 1, "method": "initialize", "params": {}})
        self.assertEqual(init["result"]["serverInfo"]["name"], "roblox-studio")

        tools = handle_request({"jsonrpc": "2.0", "id": 2, "method": "tools/list"})["result"]["tools"]
        names = [t["name"] for t in tools]
        self.assertEqual(len(names), 15)
        self.assertIn("multi", names)
        for t in tools:
            self.assertEqual(t["inputSchema"]["type"], "object")

        self.assertEqual(handle_request({"method": "notifications/initialized"}), {})
        unknown = handle_request({"jsonrpc": "2.0", "id": 3, "method": "nope"})
        self.assertEqual(unknown["error"]["code"], -32601)

    def test_tools_call_wraps_text_content(self) -> None:
        from rbxrelay.ports.mcp import main as mcp_main

        with patch.object(mcp_main, "handle_tool_call", return_value={"text": "hello", "isError": False}):
            resp = mcp_main.handle_request(
                {"jsonrpc": "2.0", "id": 4, "method": "tools/call", "params": {"name": "tree", "arguments": {"path": "x"}}}
            )
        self.assertEqual(resp["result"], {"content": [{"type": "text", "text": "hello"}]})

    def test_non_object_params_are_treated_as_empty(self) -> None:
        from rbxrelay.ports.mcp import main as mcp_main

        init = mcp_main.handle_request({"jsonrpc": "2.0", "id": 6, "method": "initialize", "params": ["x"]})
        self.assertIn("serverInfo", init["result"])

        with patch.object(mcp_main, "handle_tool_call") as fake:
            fake.side_effect = mcp_main.MCPError("unknown_tool", "Unknown tool: ")
            resp = mcp_main.handle_request({"jsonrpc": "2.0", "id": 7, "method": "tools/call", "params": ["tree"]})
        fake.assert_called_once_with("", {})
        self.assertTrue(resp["result"]["isError"])

    def test_tools_call_error_sets_is_error(self) -> None:
        from rbxrelay.ports.mcp import main as mcp_main
        from rbxrelay.ports.mcp.server import MCPError

        with patch.object(mcp_main, "handle_tool_call", side_effect=MCPError("transport_error", "Relay unreachable")):
            resp = mcp_main.handle_request(
                {"jsonrpc": "2.0", "id": 5, "method": "tools/call", "params": {"name": "tree", "arguments": {}}}
            )
        result = resp["result"]
        self.assertTrue(result["isError"])
        self.assertEqual(result["content"][0]["text"], "Error: Relay unreachable")


if __name__ == "__main__":
    unittest.main()
