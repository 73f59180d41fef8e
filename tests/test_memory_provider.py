"""
tests/test_memory_provider.py
"""


import pytest

from blog import ADMIN, POST_1, make_provider, seed_records
from entities import diagnostics
from entities.business import build_provider
from entities.errors import ForbiddenError, InvalidError
from entities.memory import InMemoryActionProvider
from entities.metadata import UnknownEntityError, UnknownOperationError
from entities.provider import ActionProvider
from entities.query import IdentityFilter, Query
from tools.execution import ExecutionContext


CTX = ExecutionContext()


def test_satisfies_the_protocol(provider):

    assert isinstance(provider, ActionProvider)

def test_seed_records_are_copied():

    seed = seed_records()
    provider = make_provider()
    provider.records("Post")[0]["title"] = "mutated"

    assert seed["Post"][0]["title"] == "Hello"

def test_unknown_lookups(provider):

    with pytest.raises(UnknownEntityError):
        provider.entity("Comment")
    with pytest.raises(UnknownEntityError):
        provider.namespace("nope")
    with pytest.raises(UnknownOperationError):
        provider.entity("Post").operation("publish")


class TestCasting:

    @pytest.mark.parametrize("views", [True, 1.5, "many"])
    def test_bad_integers(self, provider, views):

        with pytest.raises(InvalidError) as exc:
            provider.create("Post", "create", {"title": "x", "views": views}, CTX)

        assert exc.value.errors[0].field == "views"

    def test_integral_values_are_cast(self, provider):

        record = provider.create("Post", "create", {"title": 42, "views": 3.0, "published": "true"}, CTX)

        assert record["title"] == "42"
        assert record["views"] == 3
        assert record["published"] is True

    def test_uuid(self, provider):

        with pytest.raises(InvalidError):
            provider.create("Post", "create", {"title": "x", "author_id": "not-a-uuid"}, CTX)

    def test_enum(self):

        business = build_provider({"Client": [], "Invoice": [], "Task": []})

        with pytest.raises(InvalidError) as exc:
            business.create(
                "Task", "create_task", {"project": "p", "title": "t", "status": "blocked"}, ExecutionContext(actor="owner"),
            )

        assert exc.value.errors[0].meta == {"enum": ["todo", "doing", "done"]}

    def test_unaccepted_fields_are_ignored(self, provider):

        record = provider.create("Post", "create", {"title": "x", "id": "mine"}, CTX)

        assert record["id"] != "mine"


class TestPolicy:

    def test_forbidden(self, provider):

        query = Query(entity="Post", operation="destroy", identity=IdentityFilter(conditions=(("id", POST_1),)))

        with pytest.raises(ForbiddenError):
            provider.delete(query, CTX)

        assert provider.delete(query, ExecutionContext(actor=ADMIN))[0]["id"] == POST_1

    def test_can(self, provider):

        assert provider.can(ADMIN, None, "Post", "destroy", {})
        assert not provider.can(None, None, "Post", "destroy", {})
        assert provider.can(None, None, "Post", "read", {})

    def test_no_policy_allows_everything(self):

        provider = InMemoryActionProvider([])

        assert provider.can(None, None, "Anything", "at_all", {})


class TestUpdate:

    def test_required_field_cannot_be_cleared(self, provider):

        query = Query(
            entity="Post",
            operation="update",
            identity=IdentityFilter(conditions=(("id", POST_1),)),
            input={"title": None},
        )

        with pytest.raises(InvalidError):
            provider.update(query, CTX)

        assert provider.records("Post")[0]["title"] == "Hello"

    def test_filter_selects_records(self, provider):

        query = Query(entity="Post", operation="update", filter={"title": "Hello"}, input={"published": True})

        assert len(provider.update(query, CTX)) == 2


def test_custom_without_handler(provider):

    provider._handlers.pop(("Post", "ping"))

    with pytest.raises(NotImplementedError):
        provider.run_custom("Post", "ping", {}, CTX)


class TestDiagnostics:

    def test_list_entities_skips_itself(self, provider):

        out = provider.run_custom(diagnostics.ENTITY, "list_entities", {}, CTX)

        assert [e["name"] for e in out] == ["Post", "Author", "Note"]

    def test_describe_entity_hides_private_fields(self, provider):

        out = provider.run_custom(diagnostics.ENTITY, "describe_entity", {"entity": "Post"}, CTX)

        assert "secret" not in [f["name"] for f in out["fields"]]
        assert "destroy" in [o["name"] for o in out["operations"]]
        assert out["relationships"] == [{"name": "author", "destination": "Author", "many": False}]

    def test_describe_unknown_entity(self, provider):

        with pytest.raises(InvalidError):
            provider.run_custom(diagnostics.ENTITY, "describe_entity", {"entity": "Comment"}, CTX)
