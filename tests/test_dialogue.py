"""Tests of the dialogue pipeline and session service"""

import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from langchain_core.language_models.fake_chat_models import (
    FakeListChatModel,
)

from branchchat.config.config import ConfigSettings, ModelSettings
from branchchat.extensions.hooks import ExtensionRegistry
from branchchat.extensions.manifest import (
    ExtensionManifest,
    ExtensionPermission,
)
from branchchat.extensions.tools import FunctionTool
from branchchat.loggers import LoglistLogger
from branchchat.models import create_chat_model
from branchchat.pipeline.dialogue import (
    DialogueService,
    create_dialogue_pipeline,
    history_from_path,
)
from branchchat.state.turns import Turn
from branchchat.stores.conversation_tree import ConversationTreeStore
from branchchat.stores.storage import MemoryStorage

from tests.test_mocks import FailingHooks, MockLLM, MockRetriever

# pyright: basic


def make_service(responses, registry=None, retriever=None):
    logger = LoglistLogger()
    storage = MemoryStorage()
    service = DialogueService.from_settings(
        ConfigSettings(),
        storage=storage,
        llm=FakeListChatModel(responses=responses),
        retriever=retriever,
        registry=registry,
        logger=logger,
    )
    return service, storage, logger


class TestDialoguePipeline(unittest.IsolatedAsyncioTestCase):

    async def test_stage_chain(self):
        engine = create_dialogue_pipeline(
            MockLLM(responses=["<think>hmm</think>Hello there."]),
            logger=LoglistLogger(),
        )
        self.assertEqual(
            [d.stage_id for d in engine.stages],
            [
                "validate_input",
                "message_hooks",
                "build_prompt",
                "retrieve_knowledge",
                "generate",
                "parse_response",
                "response_hooks",
            ],
        )
        result = await engine.run(
            {"tree_id": "t", "user_input": " hi ", "history": []}
        )
        self.assertTrue(result.ok)
        self.assertEqual(result.context["response"], "Hello there.")
        self.assertEqual(result.context["reasoning"], "hmm")
        self.assertEqual(result.context["token_usage"]["total_tokens"], 15)
        self.assertEqual(result.context["tool_results"], [])

    async def test_knowledge_query_is_user_input(self):
        retriever = MockRetriever()
        engine = create_dialogue_pipeline(
            MockLLM(), retriever=retriever, logger=LoglistLogger()
        )
        result = await engine.run(
            {"user_input": "where is the dragon?", "variables": {"a": 1}}
        )
        self.assertTrue(result.ok)
        self.assertEqual(retriever.last_query, "where is the dragon?")
        self.assertIn("northern cave", result.context["user_message"])

    def test_history_from_path(self):
        path = [
            Turn(turn_id="root"),
            Turn(turn_id="a", parent_id="root", user_input="q",
                 response="r"),
        ]
        self.assertEqual(
            history_from_path(path), [("user", "q"), ("assistant", "r")]
        )


class TestChatModel(unittest.TestCase):

    def test_debug_provider(self):
        llm = create_chat_model(
            ModelSettings(provider="debug"), responses=["canned"]
        )
        self.assertEqual(llm.invoke("hi").content, "canned")


class TestDialogueService(unittest.IsolatedAsyncioTestCase):

    async def test_conversation_with_variables(self):
        service, _, _ = make_service(
            [
                "You wake up. {{setvar::gold::10}}",
                "You rest. _.set('hp', null, 100, 'rested');",
            ]
        )
        await service.start_conversation("alice")

        first = await service.send_message("alice", "wake up")
        self.assertTrue(first.ok)
        self.assertEqual(first.response, "You wake up.")
        self.assertEqual(first.variables, {"gold": 10})

        second = await service.send_message("alice", "rest")
        self.assertEqual(second.variables, {"gold": 10, "hp": 100})

        store = service.session("alice")
        self.assertEqual(
            await store.resolve_state("alice", first.turn_id),
            {"gold": 10},
        )
        self.assertEqual(
            await store.resolve_state("alice", second.turn_id),
            {"gold": 10, "hp": 100},
        )
        tree = await store.get_tree("alice")
        turn = tree.find_turn(second.turn_id)
        self.assertEqual(turn.parent_id, first.turn_id)
        self.assertEqual(turn.user_input, "rest")
        self.assertIn("_.set", turn.full_response)

    async def test_branching_restores_variables(self):
        service, _, _ = make_service(
            [
                "Start. {{setvar::gold::1}}",
                "Left. {{setvar::gold::2}}",
                "Right. {{setvar::hp::5}}",
            ]
        )
        await service.start_conversation("alice")
        start = await service.send_message("alice", "start")
        await service.send_message("alice", "go left")

        right = await service.send_message(
            "alice", "go right", parent_turn_id=start.turn_id
        )
        self.assertEqual(right.variables, {"gold": 1, "hp": 5})
        self.assertEqual(service.get_variables("alice"), right.variables)

    async def test_trees_have_separate_variables(self):
        service, _, _ = make_service(["A {{setvar::gold::1}}", "B"])
        await service.start_conversation("alice")
        await service.start_conversation("bob")
        await service.send_message("alice", "hi")
        await service.send_message("bob", "hi")

        self.assertEqual(service.get_variables("alice"), {"gold": 1})
        self.assertEqual(service.get_variables("bob"), {})

    async def test_concurrent_messages(self):
        service, storage, _ = make_service(["ok"])
        await service.start_conversation("alice")
        await service.start_conversation("bob")
        await asyncio.gather(
            service.send_message("alice", "one"),
            service.send_message("alice", "two"),
            service.send_message("bob", "three"),
        )
        records = storage.collections["dialogue_trees"]
        self.assertEqual(
            {r["tree_id"]: len(r["turns"]) for r in records},
            {"alice": 3, "bob": 2},
        )

    async def test_failure_names_stage(self):
        service, storage, _ = make_service(["unused"])
        await service.start_conversation("alice")

        reply = await service.send_message("alice", "   ")
        self.assertFalse(reply.ok)
        self.assertEqual(reply.status, "failed")
        self.assertEqual(reply.failed_stage, "validate_input")
        self.assertIn("validate_input", reply.error)
        tree = await service.session("alice").get_tree("alice")
        self.assertEqual(len(tree.turns), 1)

    async def test_model_failure(self):
        service = DialogueService.from_settings(
            ConfigSettings(),
            storage=MemoryStorage(),
            llm=MockLLM(exception=ConnectionError("offline")),
            logger=LoglistLogger(),
        )
        await service.start_conversation("alice")
        reply = await service.send_message("alice", "hello")
        self.assertEqual(reply.failed_stage, "generate")
        self.assertEqual(reply.error, "Stage 'generate' failed: offline")

    async def test_debug_model_from_settings(self):
        settings = ConfigSettings(model=ModelSettings(provider="debug"))
        service = DialogueService.from_settings(
            settings, storage=MemoryStorage(), logger=LoglistLogger()
        )
        await service.start_conversation("alice")
        reply = await service.send_message("alice", "hello")
        self.assertTrue(reply.ok)
        self.assertEqual(reply.response, "The story continues.")
        self.assertEqual(reply.next_prompts, ["Look around", "Wait"])

    async def test_invalid_variable_updates_are_skipped(self):
        settings = ConfigSettings(model=ModelSettings(provider="debug"))
        logger = LoglistLogger()
        service = DialogueService.from_settings(
            settings,
            storage=MemoryStorage(),
            llm=create_chat_model(
                settings.model,
                responses=[
                    "Hi {{setvar::[]::3}} {{setvar::items[5]::x}} "
                    "_.set('gold', 0, 10);"
                ],
            ),
            logger=logger,
        )
        await service.start_conversation("alice")
        reply = await service.send_message("alice", "hello")

        self.assertTrue(reply.ok)
        self.assertEqual(reply.variables, {"gold": 10})
        self.assertEqual(logger.count_logs("WARNING"), 1)
        store = service.session("alice")
        self.assertEqual(
            await store.resolve_state("alice", reply.turn_id),
            {"gold": 10},
        )

    async def test_variables_unchanged_when_turn_not_added(self):
        service, _, _ = make_service(
            [
                "A {{setvar::gold::1}}",
                "B {{setvar::gold::2}}",
                "C {{setvar::gold::3}}",
            ]
        )
        await service.start_conversation("alice")
        first = await service.send_message("alice", "one")

        with patch.object(
            ConversationTreeStore, "add_turn", AsyncMock(return_value=None)
        ):
            reply = await service.send_message("alice", "two")
        self.assertFalse(reply.ok)
        self.assertEqual(service.get_variables("alice"), {"gold": 1})

        second = await service.send_message("alice", "three")
        store = service.session("alice")
        tree = await store.get_tree("alice")
        turn = tree.find_turn(second.turn_id)
        self.assertEqual(turn.parent_id, first.turn_id)
        self.assertEqual(
            [(c.old_value, c.new_value) for c in turn.variable_changes],
            [(1, 3)],
        )

    async def test_missing_tree_and_parent(self):
        service, _, _ = make_service(["ok"])
        reply = await service.send_message("nobody", "hi")
        self.assertFalse(reply.ok)

        await service.start_conversation("alice")
        reply = await service.send_message(
            "alice", "hi", parent_turn_id="nope"
        )
        self.assertFalse(reply.ok)

    async def test_cancelled_message(self):
        service, _, _ = make_service(["ok"])
        await service.start_conversation("alice")
        cancel = asyncio.Event()
        cancel.set()
        reply = await service.send_message("alice", "hi", cancel_event=cancel)
        self.assertEqual(reply.status, "cancelled")
        tree = await service.session("alice").get_tree("alice")
        self.assertEqual(len(tree.turns), 1)

    async def test_delete_and_clear(self):
        service, _, _ = make_service(["A {{setvar::gold::1}}", "B"])
        await service.start_conversation("alice")
        first = await service.send_message("alice", "one")
        await service.send_message("alice", "two")

        tree = await service.delete_turn("alice", first.turn_id)
        self.assertEqual(tree.current_turn_id, "alice")
        self.assertEqual(service.get_variables("alice"), {})

        await service.send_message("alice", "three")
        tree = await service.clear_history("alice")
        self.assertEqual(len(tree.turns), 1)

    async def test_failing_response_hook_does_not_alter_turn(self):
        responses = ["The dragon sleeps."]

        async def persisted_response(registry) -> str:
            service, _, _ = make_service(responses, registry=registry)
            await service.start_conversation("alice")
            reply = await service.send_message("alice", "look")
            tree = await service.session("alice").get_tree("alice")
            return tree.find_turn(reply.turn_id).response

        disabled = ExtensionRegistry(logger=LoglistLogger())
        manifest = ExtensionManifest(
            id="broken",
            name="Broken",
            version="0.1.0",
            permissions=[ExtensionPermission.WRITE_MESSAGES],
        )
        await disabled.register(manifest, FailingHooks())
        await disabled.disable("broken")

        enabled = ExtensionRegistry(logger=LoglistLogger())
        await enabled.register(manifest, FailingHooks())

        self.assertEqual(
            await persisted_response(enabled),
            await persisted_response(disabled),
        )
        self.assertEqual(
            await persisted_response(enabled), "The dragon sleeps."
        )

    async def test_tool_call_in_response(self):
        registry = ExtensionRegistry(logger=LoglistLogger())
        registry.tools.register(
            "dice", FunctionTool("dice", lambda context, params: 8)
        )
        service, _, _ = make_service(
            ["You roll [tool:dice:2d6]."], registry=registry
        )
        await service.start_conversation("alice")
        reply = await service.send_message("alice", "roll")
        self.assertTrue(reply.response.startswith("You roll [dice: 8]."))
        self.assertEqual(reply.tool_results[0]["result"], 8)
        tree = await service.session("alice").get_tree("alice")
        turn = tree.find_turn(reply.turn_id)
        self.assertEqual(turn.parsed.tool_results[0]["tool_name"], "dice")


if __name__ == "__main__":
    unittest.main()
