"""
tests/test_registry.py
"""


import json
import logging

import pytest

from blog import ADMIN, POST_1, WRITER, make_provider
from entities.memory import InMemoryActionProvider
from entities.metadata import Namespace, UnknownEntityError
from tools.definition import ToolDefinition, ToolEndEvent, ToolStartEvent
from tools.execution import ExecutionContext
from tools.registry import DuplicateToolError, NoMatchingToolsError, ToolSelection, build, describe, discover


def _names(provider, **selection):

    return [d.name for d in discover(provider, ToolSelection(**selection))]


class TestDiscovery:

    def test_everything_by_default(self, provider):

        names = _names(provider, actor=ADMIN)

        assert names[:3] == ["read_posts", "read_posts_with_secret", "read_published"]
        assert "destroy_post" in names
        assert names[-2:] == ["list_entities", "describe_entity"]

    def test_forbidden_operations_are_never_exposed(self, provider):

        assert "destroy_post" not in _names(provider, actor=WRITER)
        assert "destroy_post" not in _names(provider)

    def test_actions(self, provider):

        names = _names(provider, actions=[("Post", ["read", "create"])])

        assert names == ["read_posts", "read_posts_with_secret", "create_post"]

    def test_actions_wildcard(self, provider):

        assert _names(provider, actions=[("Author", "*")]) == ["rename_author"]

    def test_actions_without_match(self, provider):

        with pytest.raises(NoMatchingToolsError):
            discover(provider, ToolSelection(actions=[("Post", ["publish"])]))

    def test_duplicate_selections_are_collapsed(self, provider):

        names = _names(provider, actions=[("Post", "ping"), ("Post", ["ping"])])

        assert names == ["ping"]

    def test_namespaces(self, provider):

        assert _names(provider, namespaces=["diagnostics"]) == ["list_entities", "describe_entity"]

    def test_unknown_namespace(self, provider):

        with pytest.raises(UnknownEntityError):
            discover(provider, ToolSelection(namespaces=["nope"]))

    def test_diagnostics_shortcut(self, provider):

        assert _names(provider, tools="diagnostics") == ["list_entities", "describe_entity"]

    def test_tool_names(self, provider):

        assert _names(provider, tools=["ping", "word_count"]) == ["word_count", "ping"]
        assert _names(provider, tools="ping") == ["ping"]

    def test_exclude(self, provider):

        names = _names(provider, actor=ADMIN, exclude=[("Post", "*"), ("Author", "rename")])

        assert names == ["read_notes", "create_note", "list_entities", "describe_entity"]

    def test_predicate(self, provider):

        names = _names(provider, predicate=lambda d: d.entity == "Note")

        assert names == ["read_notes", "create_note"]

    def test_no_namespaces_warns(self, caplog):

        with caplog.at_level(logging.WARNING, logger="tools.registry"):
            toolkit = build(InMemoryActionProvider([]))

        assert toolkit.tools == []
        assert "no namespaces" in caplog.text

    def test_raising_permission_check_drops_the_tool(self, caplog):

        def policy(actor, tenant, entity, operation, input):
            if operation == "word_count":
                raise KeyError("text")
            return True

        provider = make_provider()
        provider.policy = policy

        with caplog.at_level(logging.ERROR, logger="tools.registry"):
            names = _names(provider)

        assert "word_count" not in names
        assert "ping" in names
        assert "Post.word_count" in caplog.text


class TestBuild:

    def test_descriptors(self, provider):

        toolkit = build(provider, ToolSelection(tools=["word_count", "ping"]))
        by_name = {t.name: t for t in toolkit.tools}

        assert toolkit.names == ["word_count", "ping"]
        assert by_name["word_count"].description == "Count the words in a text."
        assert by_name["ping"].description == "Call the ping operation on the Post entity"
        assert by_name["word_count"].parameters["required"] == ["input"]

    def test_openai_tools(self, provider):

        spec = build(provider, ToolSelection(tools="ping")).openai_tools()[0]

        assert spec["type"] == "function"
        assert spec["function"]["name"] == "ping"
        assert spec["function"]["parameters"]["additionalProperties"] is False

    def test_definition_description_wins(self, provider):

        d = ToolDefinition(name="x", entity="Post", operation="word_count", description="  Custom.  ")

        assert describe(d, provider) == "Custom."

    def test_duplicate_names_fail(self):

        other = Namespace(
            name="other",
            entities=(),
            tools=(ToolDefinition(name="ping", entity="Post", operation="word_count"),),
        )
        provider = make_provider()
        provider._namespaces["other"] = other

        with pytest.raises(DuplicateToolError) as exc:
            build(provider)

        assert "Post.ping" in str(exc.value)
        assert "Post.word_count" in str(exc.value)

    def test_callback_runs_the_operation(self, provider):

        toolkit = build(provider, ToolSelection(tools="read_posts"))
        result = toolkit.registry["read_posts"]({"filter": {"id": POST_1}})

        assert result.ok
        assert json.loads(result.json)[0]["id"] == POST_1

    def test_namespace_show_raised_errors(self):

        provider = make_provider(show_raised_errors=True)
        result = build(provider, ToolSelection(tools="boom")).registry["boom"]({})

        assert "kaboom" in result.errors[0]["detail"]


class TestActorBinding:

    def test_other_actor_is_refused(self, provider):

        toolkit = build(provider, ToolSelection(actor=ADMIN))
        callback = toolkit.registry["destroy_post"]

        result = callback({"id": POST_1}, ExecutionContext(actor=WRITER))

        assert result.errors[0]["status"] == 403
        assert len(provider.records("Post")) == 3

    def test_other_tenant_is_refused(self, provider):

        toolkit = build(provider, ToolSelection(tenant="acme"))

        result = toolkit.registry["read_notes"]({}, ExecutionContext(tenant="globex"))

        assert not result.ok

    def test_same_actor_merges_context(self, provider):

        toolkit = build(provider, ToolSelection(actor=ADMIN, context={"a": 1}))

        result = toolkit.registry["destroy_post"]({"id": POST_1}, ExecutionContext(actor=ADMIN, context={"b": 2}))

        assert result.ok

    def test_bound_context_cannot_be_overridden(self, provider):

        seen = []
        toolkit = build(provider, ToolSelection(actor=ADMIN, context={"a": 1}, on_tool_start=seen.append))
        callback = toolkit.registry["ping"]

        refused = callback({}, ExecutionContext(actor=ADMIN, context={"a": 2}))
        same = callback({}, ExecutionContext(actor=ADMIN, context={"a": 1, "b": 2}))

        assert refused.errors[0]["status"] == 403
        assert refused.errors[0]["meta"] == {"context": ["a"]}
        assert same.ok
        assert len(seen) == 1

    def test_bound_tenant_is_used(self, provider):

        toolkit = build(provider, ToolSelection(tenant="globex"))

        result = toolkit.registry["read_notes"]({})

        assert [r["text"] for r in result.raw] == ["globex note"]


class TestLifecycleCallbacks:

    def test_start_and_end(self, provider):

        events = []
        toolkit = build(provider, ToolSelection(
            tools="word_count",
            actor=WRITER,
            on_tool_start=events.append,
            on_tool_end=events.append,
        ))

        result = toolkit.registry["word_count"]('{"input": {"text": "a b"}}')

        start, end = events
        assert isinstance(start, ToolStartEvent)
        assert start.tool_name == "word_count"
        assert (start.entity, start.operation) == ("Post", "word_count")
        assert start.arguments == {"input": {"text": "a b"}}
        assert start.actor == WRITER
        assert isinstance(end, ToolEndEvent)
        assert end.result is result

    def test_start_event_with_unparseable_arguments(self, provider):

        events = []
        toolkit = build(provider, ToolSelection(tools="ping", on_tool_start=events.append))

        result = toolkit.registry["ping"]("{oops")

        assert events[0].arguments == {"raw": "{oops"}
        assert result.errors[0]["code"] == "invalid_json"

    def test_per_call_callbacks(self, provider):

        events = []
        toolkit = build(provider, ToolSelection(tools="ping"))

        toolkit.registry["ping"]({}, ExecutionContext(on_tool_end=events.append))

        assert [e.tool_name for e in events] == ["ping"]
