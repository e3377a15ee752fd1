"""Tests of extensions: manifests, registry, hook dispatch, loading
and tool calls"""

import json
import os
import tempfile
import unittest

from branchchat.errors import ExtensionPermissionError, ManifestError
from branchchat.extensions.hooks import (
    ExtensionAPI,
    ExtensionRegistry,
    HookDispatcher,
)
from branchchat.extensions.loader import ExtensionLoader
from branchchat.extensions.manifest import (
    ExtensionManifest,
    ExtensionPermission,
    MessageContext,
    read_manifest,
)
from branchchat.extensions.tools import (
    FunctionTool,
    ToolCallDetector,
    ToolCallProcessor,
    ToolRegistry,
    format_tool_result,
    parse_tool_params,
)
from branchchat.loggers import LoglistLogger

from tests.test_mocks import FailingHooks, RecordingHooks

# pyright: basic


WRITE = [ExtensionPermission.WRITE_MESSAGES]


def make_manifest(ext_id: str, permissions=None, **kwargs):
    return ExtensionManifest(
        id=ext_id,
        name=ext_id.title(),
        version="1.0.0",
        permissions=permissions or [],
        **kwargs,
    )


MAIN_PY = '''
def on_load(context):
    context.api.register_tool(
        "roll", lambda ctx, params: {"result": 4, "success": True}
    )


def on_response(message, context):
    message.content = message.content.upper()
    return message
'''


class TestManifest(unittest.TestCase):

    def test_valid_manifest(self):
        manifest = make_manifest(
            "dice-roller",
            [ExtensionPermission.TOOL_REGISTRATION],
            category="tool",
        )
        self.assertTrue(
            manifest.has_permission(ExtensionPermission.TOOL_REGISTRATION)
        )
        self.assertFalse(
            manifest.has_permission(ExtensionPermission.LOCAL_STORAGE)
        )

    def test_invalid_id_and_version(self):
        for ext_id, version in [
            ("Dice", "1.0.0"),
            ("dice_roller", "1.0.0"),
            ("dice", "1.0"),
            ("dice", "v1.0.0"),
        ]:
            with self.subTest(id=ext_id, version=version):
                with self.assertRaises(ValueError):
                    ExtensionManifest(id=ext_id, name="x", version=version)

    def test_read_manifest(self):
        with tempfile.TemporaryDirectory() as folder:
            with self.assertRaises(ManifestError):
                read_manifest(folder)

            path = os.path.join(folder, "manifest.json")
            with open(path, "w", encoding="utf-8") as f:
                f.write("[1, 2]")
            with self.assertRaises(ManifestError):
                read_manifest(folder)

            with open(path, "w", encoding="utf-8") as f:
                json.dump({"id": "x", "name": "X", "version": "1.0.0"}, f)
            # main.py missing
            with self.assertRaises(ManifestError):
                read_manifest(folder)

            with open(os.path.join(folder, "main.py"), "w") as f:
                f.write("")
            manifest = read_manifest(folder)
            self.assertEqual(manifest.id, "x")
            self.assertEqual(str(manifest.path), folder)


class TestExtensionAPI(unittest.TestCase):

    def test_permissions(self):
        tools = ToolRegistry(LoglistLogger())
        api = ExtensionAPI(make_manifest("plain"), tools)
        with self.assertRaises(ExtensionPermissionError):
            api.register_tool("t", lambda c, p: None)
        with self.assertRaises(ExtensionPermissionError):
            api.set_storage("k", 1)
        # configuration needs no permission
        api.set_config({"a": 1})
        api.update_config({"b": 2})
        self.assertEqual(api.get_config(), {"a": 1, "b": 2})

    def test_granted_permissions(self):
        tools = ToolRegistry(LoglistLogger())
        api = ExtensionAPI(
            make_manifest(
                "full",
                [
                    ExtensionPermission.TOOL_REGISTRATION,
                    ExtensionPermission.LOCAL_STORAGE,
                ],
            ),
            tools,
        )
        api.register_tool("t", lambda c, p: "ok")
        self.assertEqual(tools.owner_of("t"), "full")
        api.set_storage("k", [1])
        self.assertEqual(api.get_storage("k"), [1])
        api.remove_storage("k")
        self.assertIsNone(api.get_storage("k"))
        self.assertTrue(api.unregister_tool("t"))
        self.assertNotIn("t", tools)


class TestRegistry(unittest.IsolatedAsyncioTestCase):

    async def test_lifecycle(self):
        registry = ExtensionRegistry(logger=LoglistLogger())
        hooks = RecordingHooks()
        extension = await registry.register(make_manifest("rec"), hooks)

        self.assertIsNotNone(extension)
        self.assertTrue(extension.enabled)
        self.assertEqual(hooks.calls, ["on_load", "on_enable"])

        self.assertTrue(await registry.update_settings("rec", {"x": 1}))
        self.assertEqual(extension.context.config, {"x": 1})
        self.assertTrue(await registry.disable("rec"))
        self.assertEqual(registry.enabled_extensions, [])
        self.assertTrue(await registry.unload("rec"))
        self.assertEqual(len(registry), 0)
        self.assertEqual(
            hooks.calls,
            [
                "on_load",
                "on_enable",
                "on_settings_change",
                "on_disable",
                "on_unload",
            ],
        )
        self.assertFalse(await registry.enable("rec"))

    async def test_duplicate_and_disabled(self):
        logger = LoglistLogger()
        registry = ExtensionRegistry(logger=logger)
        await registry.register(
            make_manifest("a", enabled=False), RecordingHooks()
        )
        self.assertIsNone(
            await registry.register(make_manifest("a"), RecordingHooks())
        )
        self.assertEqual(len(registry), 1)
        self.assertFalse(registry.get("a").enabled)

    async def test_failing_on_load(self):
        class BadLoad(RecordingHooks):
            def on_load(self, context):
                context.api.register_tool("t", lambda c, p: 1)
                raise RuntimeError("cannot start")

        logger = LoglistLogger()
        registry = ExtensionRegistry(logger=logger)
        manifest = make_manifest(
            "bad", [ExtensionPermission.TOOL_REGISTRATION]
        )
        self.assertIsNone(await registry.register(manifest, BadLoad()))
        self.assertEqual(len(registry), 0)
        self.assertNotIn("t", registry.tools)
        self.assertEqual(logger.count_logs("ERROR"), 1)


class TestHookDispatcher(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.logger = LoglistLogger()
        self.registry = ExtensionRegistry(logger=self.logger)

    async def test_hooks_in_registration_order(self):
        first, second = RecordingHooks("-1"), RecordingHooks("-2")
        await self.registry.register(make_manifest("first", WRITE), first)
        await self.registry.register(make_manifest("second", WRITE), second)
        dispatcher = HookDispatcher(self.registry, logger=self.logger)

        message = MessageContext(role="user", content="hi")
        result = await dispatcher.on_message(message)
        self.assertEqual(result.content, "hi-1-2")
        self.assertEqual(second.received, ["hi-1"])
        # the caller's message is not modified
        self.assertEqual(message.content, "hi")

    async def test_failing_hook_passes_message_on(self):
        before, after = RecordingHooks("-a"), RecordingHooks("-b")
        await self.registry.register(make_manifest("before", WRITE), before)
        await self.registry.register(
            make_manifest("bad", WRITE), FailingHooks()
        )
        await self.registry.register(make_manifest("after", WRITE), after)
        dispatcher = HookDispatcher(self.registry, logger=self.logger)

        result = await dispatcher.on_response(
            MessageContext(role="assistant", content="text")
        )
        self.assertEqual(after.received, ["text-a"])
        self.assertEqual(result.content, "text-a-b")
        self.assertEqual(self.logger.count_logs("ERROR"), 1)

    async def test_annotation(self):
        await self.registry.register(
            make_manifest("bad", WRITE), FailingHooks()
        )
        dispatcher = HookDispatcher(
            self.registry, annotate_errors=True, logger=self.logger
        )
        result = await dispatcher.on_response(
            MessageContext(role="assistant", content="text")
        )
        self.assertEqual(result.content, "text\n\n[extension error: bad]")

        # messages from the user are never annotated
        result = await dispatcher.on_message(
            MessageContext(role="user", content="hi")
        )
        self.assertEqual(result.content, "hi")

    async def test_message_permissions(self):
        reader, silent = RecordingHooks("-r"), RecordingHooks("-s")
        read = [ExtensionPermission.READ_MESSAGES]
        await self.registry.register(make_manifest("reader", read), reader)
        await self.registry.register(make_manifest("silent"), silent)
        dispatcher = HookDispatcher(self.registry, logger=self.logger)

        result = await dispatcher.on_message(
            MessageContext(role="user", content="hi")
        )
        self.assertEqual(result.content, "hi")
        self.assertEqual(reader.received, ["hi"])
        self.assertEqual(silent.received, [])
        self.assertEqual(self.logger.count_logs("WARNING"), 1)

    async def test_disabled_extension_skipped(self):
        hooks = RecordingHooks("-x")
        await self.registry.register(make_manifest("x", WRITE), hooks)
        await self.registry.disable("x")
        dispatcher = HookDispatcher(self.registry, logger=self.logger)
        result = await dispatcher.on_message(
            MessageContext(role="user", content="hi")
        )
        self.assertEqual(result.content, "hi")


class TestLoader(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.folder = self.tempdir.name
        self.logger = LoglistLogger()

        dice = os.path.join(self.folder, "dice")
        os.mkdir(dice)
        with open(os.path.join(dice, "manifest.json"), "w") as f:
            json.dump(
                {
                    "id": "dice-roller",
                    "name": "Dice roller",
                    "version": "1.2.0",
                    "category": "tool",
                    "permissions": ["tool_registration", "write_messages"],
                },
                f,
            )
        with open(os.path.join(dice, "main.py"), "w") as f:
            f.write(MAIN_PY)

        broken = os.path.join(self.folder, "broken")
        os.mkdir(broken)
        with open(os.path.join(broken, "manifest.json"), "w") as f:
            f.write("{")

    async def asyncTearDown(self):
        self.tempdir.cleanup()

    async def test_discover(self):
        result = ExtensionLoader(self.logger).discover(self.folder)
        self.assertEqual([m.id for m in result.found], ["dice-roller"])
        self.assertEqual(len(result.errors), 1)
        self.assertIn("broken", result.errors[0][0])

    async def test_missing_folder(self):
        result = ExtensionLoader(self.logger).discover(
            os.path.join(self.folder, "nothing")
        )
        self.assertEqual(result.found, [])

    async def test_load_folder(self):
        registry = ExtensionRegistry(logger=self.logger)
        loaded = await ExtensionLoader(self.logger).load_folder(
            self.folder, registry
        )
        self.assertEqual([e.id for e in loaded], ["dice-roller"])
        self.assertIn("roll", registry.tools)
        self.assertEqual(registry.tools.owner_of("roll"), "dice-roller")

        dispatcher = HookDispatcher(registry, logger=self.logger)
        result = await dispatcher.on_response(
            MessageContext(role="assistant", content="loud")
        )
        self.assertEqual(result.content, "LOUD")


class TestToolCalls(unittest.IsolatedAsyncioTestCase):

    def test_detection_order(self):
        text = (
            "{{weather|city=Rome}} and [tool:dice:2d6] then "
            "@time(zone=UTC)\n/roll 1d20"
        )
        calls = ToolCallDetector().detect(text)
        self.assertEqual(
            [(c.syntax, c.tool_name) for c in calls],
            [
                ("slash", "roll"),
                ("at_call", "time"),
                ("bracket", "dice"),
                ("brace", "weather"),
            ],
        )
        self.assertEqual(calls[0].raw_params, "1d20")
        self.assertEqual(calls[2].raw_match, "[tool:dice:2d6]")

    def test_slash_only_at_line_start(self):
        calls = ToolCallDetector().detect("and/or this")
        self.assertEqual(calls, [])

    def test_parse_params(self):
        self.assertEqual(parse_tool_params(""), {})
        self.assertEqual(parse_tool_params('{"a": 1}'), {"a": 1})
        self.assertEqual(
            parse_tool_params("city=Rome, unit: C"),
            {"city": "Rome", "unit": "C"},
        )
        self.assertEqual(parse_tool_params("2d6"), {"raw": "2d6"})

    def test_format_result(self):
        self.assertEqual(format_tool_result("t", 3), "[t: 3]")
        self.assertEqual(
            format_tool_result("t", {"result": "ok"}), "[t: ok]"
        )
        self.assertEqual(
            format_tool_result("t", {"error": "bad"}), "[t error: bad]"
        )

    async def test_processing(self):
        logger = LoglistLogger()
        registry = ToolRegistry(logger)
        registry.register(
            "dice", FunctionTool("dice", lambda c, p: {"result": 7})
        )

        async def explode(context, params):
            raise ValueError("no sides")

        registry.register("bomb", FunctionTool("bomb", explode))
        processor = ToolCallProcessor(registry, logger=logger)

        result = await processor.process(
            "Roll [tool:dice:2d6], [tool:bomb:x] and [tool:ghost:1].",
            "alice",
        )
        self.assertTrue(result.has_calls)
        self.assertEqual(len(result.results), 2)
        self.assertTrue(result.text.startswith(
            "Roll [dice: 7], [tool bomb failed: no sides] and "
            "[tool:ghost:1]."
        ))
        self.assertIn("**Tool results:**", result.text)
        self.assertIn("✓ dice: 7", result.text)
        self.assertIn("✗ bomb: no sides", result.text)
        self.assertEqual(result.results[0].params, {"raw": "2d6"})
        self.assertFalse(result.results[1].ok)
        self.assertEqual(logger.count_logs("WARNING"), 1)

    async def test_nested_call_not_executed(self):
        logger = LoglistLogger()
        registry = ToolRegistry(logger)
        calls: list[str] = []

        def record(name, value):
            def execute(context, params):
                calls.append(name)
                return value

            return execute

        registry.register("roll", FunctionTool("roll", record("roll", "R")))
        registry.register("dice", FunctionTool("dice", record("dice", 6)))
        processor = ToolCallProcessor(
            registry, append_summary=False, logger=logger
        )

        result = await processor.process("/roll @dice(2)\n@dice(1)", "bob")
        self.assertEqual(calls, ["roll", "dice"])
        self.assertEqual(result.text, "[roll: R]\n[dice: 6]")
        self.assertEqual(
            [r.raw_match for r in result.results],
            ["/roll @dice(2)", "@dice(1)"],
        )
        self.assertEqual(logger.count_logs("WARNING"), 1)

    async def test_no_summary(self):
        registry = ToolRegistry(LoglistLogger())
        registry.register("echo", FunctionTool("echo", lambda c, p: p))
        processor = ToolCallProcessor(registry, append_summary=False)
        result = await processor.process("@echo(hi)", "alice")
        self.assertEqual(result.text, '[echo: {"raw": "hi"}]')


if __name__ == "__main__":
    unittest.main()
