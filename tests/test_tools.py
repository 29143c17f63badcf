import base64
import json
import logging
import unittest


class TestToolValidation(unittest.TestCase):
    def test_required_and_non_empty(self) -> None:
        from rbxrelay.daemon.errors import ValidationError
        from rbxrelay.kernel.tools import validate_args

        validate_args("tree", {"path": "workspace"})
        with self.assertRaises(ValidationError):
            validate_args("tree", {})
        with self.assertRaises(ValidationError):
            validate_args("delete", {"path": "   "})
        with self.assertRaises(ValidationError):
            validate_args("scriptSearch", {"searchText": ""})
        with self.assertRaises(ValidationError):
            validate_args("copy", {"sourcePath": "workspace.A"})
        with self.assertRaises(ValidationError):
            validate_args("tree", ["workspace"])

    def test_tool_specific_checks(self) -> None:
        from rbxrelay.daemon.errors import ValidationError
        from rbxrelay.kernel.tools import validate_args

        with self.assertRaises(ValidationError):
            validate_args("editScript", {"path": "p", "old_string": "a", "new_string": "a"})
        with self.assertRaises(ValidationError):
            validate_args("convertScript", {"path": "p", "targetType": "Part"})
        validate_args("convertScript", {"path": "p", "targetType": "ModuleScript"})
        with self.assertRaises(ValidationError):
            validate_args("insertLines", {"path": "p", "lineNumber": 1, "lines": "x"})
        with self.assertRaises(ValidationError):
            validate_args("get", {"path": "p", "attributes": "Size"})

    def test_unknown_tool(self) -> None:
        from rbxrelay.daemon.errors import ValidationError
        from rbxrelay.kernel.tools import get_tool

        with self.assertRaises(ValidationError) as ctx:
            get_tool("teleport")
        self.assertEqual(ctx.exception.code, "unknown_tool")

    def test_transport_fields_round_trip(self) -> None:
        from rbxrelay.kernel.tools import decode_transport_fields, encode_transport_fields

        args = {"className": "Script", "name": "S", "parent": "workspace", "source": "print('hi')\n-- ünïcode"}
        enc = encode_transport_fields("create", args)
        self.assertEqual(enc["name"], "S")
        self.assertNotEqual(enc["source"], args["source"])
        self.assertEqual(decode_transport_fields("create", enc), args)
        # Plain text from older callers passes through untouched.
        self.assertEqual(decode_transport_fields("create", args), args)


class TestBase64Helpers(unittest.TestCase):
    def test_decode_text_leaves_non_base64_alone(self) -> None:
        from rbxrelay.util.b64 import decode_text

        for value in ("[SUCCESS] done", "[ERROR] nope", "abc", "hello world", "", None, 42):
            self.assertEqual(decode_text(value), value)

    def test_decode_text_decodes_strict_base64(self) -> None:
        from rbxrelay.util.b64 import decode_text, encode_text

        self.assertEqual(decode_text(encode_text("local x = 1")), "local x = 1")
        self.assertEqual(encode_text(""), "")

    def test_decode_output_requires_printable_text(self) -> None:
        from rbxrelay.util.b64 import decode_output

        binary = base64.b64encode(b"\x00\x01\x02\x03").decode("ascii")
        self.assertEqual(decode_output(binary), binary)
        text = base64.b64encode("line 1\nline 2".encode("utf-8")).decode("ascii")
        self.assertEqual(decode_output(text), "line 1\nline 2")


class TestJsonlFormatter(unittest.TestCase):
    def test_correlation_keys_are_included(self) -> None:
        from rbxrelay.util.obslog import JsonlFormatter

        record = logging.LogRecord("rbxrelay.core", logging.INFO, __file__, 1, "dispatched %s", ("tree",), None)
        record.correlation_id = "c-1"
        record.tool = "tree"
        doc = json.loads(JsonlFormatter(component="web").format(record))
        self.assertEqual(doc["msg"], "dispatched tree")
        self.assertEqual(doc["component"], "web")
        self.assertEqual(doc["correlation_id"], "c-1")
        self.assertEqual(doc["tool"], "tree")
        self.assertNotIn("op", doc)

    def test_broadcast_handler_emits_log_events(self) -> None:
        from rbxrelay.daemon.broadcast import BroadcastLogHandler, EventBroadcaster

        b = EventBroadcaster()
        sub = b.subscribe()
        handler = BroadcastLogHandler(b)
        log = logging.getLogger("rbxrelay.test.broadcast")
        log.setLevel(logging.INFO)
        log.addHandler(handler)
        try:
            log.info("Request approved", extra={"status": "success"})
            log.warning("Request rejected")
        finally:
            log.removeHandler(handler)

        first = sub.q.get_nowait()
        second = sub.q.get_nowait()
        self.assertEqual(first["event"], "log")
        self.assertEqual(first["data"]["type"], "success")
        self.assertTrue(first["data"]["message"].endswith("Request approved"))
        self.assertEqual(second["data"]["type"], "warning")


if __name__ == "__main__":
    unittest.main()
