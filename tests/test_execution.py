"""
tests/test_execution.py
"""


import json

import pytest

from blog import ADMIN, AUTHOR_1, MISSING, POST_1, POST_2, POST_3, WRITER
from entities.errors import InvalidError
from entities.metadata import Kind, OperationMeta
from entities.permissions import RolePolicy
from tools.definition import IdentitySpec
from tools.execution import ExecutionContext, ExecutionEngine, Failure, Success, build_limit, decode_arguments


@pytest.fixture
def engine(provider):

    return ExecutionEngine(provider)


class TestDecodeArguments:

    def test_empty_values(self):

        assert decode_arguments(None) == {}
        assert decode_arguments("") == {}
        assert decode_arguments("  ") == {}

    def test_json_text(self):

        assert decode_arguments('{"limit": 1}') == {"limit": 1}

    def test_bad_json(self):

        with pytest.raises(InvalidError) as exc:
            decode_arguments("{not json")

        assert exc.value.errors[0].code == "invalid_json"

    def test_non_object(self):

        with pytest.raises(InvalidError):
            decode_arguments("[1, 2]")


class TestBuildLimit:

    def test_limit_and_max(self):

        op = OperationMeta(name="q", kind=Kind.QUERY, max_page_size=10)

        assert build_limit(50, op) == 10
        assert build_limit(3, op) == 3

    def test_limit_without_max(self):

        assert build_limit(500, OperationMeta(name="q", kind=Kind.QUERY)) == 500

    def test_defaults(self):

        assert build_limit(None, OperationMeta(name="q", kind=Kind.QUERY, default_limit=7)) == 7
        assert build_limit(None, OperationMeta(name="q", kind=Kind.QUERY)) == 25

    def test_negative(self):

        with pytest.raises(InvalidError):
            build_limit(-1, OperationMeta(name="q", kind=Kind.QUERY))


class TestQuery:

    def test_read_posts_filter_and_limit(self, engine):

        result = engine.run("Post", "read", {"filter": {"title": {"eq": "Hello"}}, "limit": 1})
        payload = json.loads(result.json)

        assert isinstance(result, Success)
        assert [r["id"] for r in result.raw] == [POST_1]
        assert payload[0]["title"] == "Hello"
        assert "secret" not in payload[0]

    def test_load_reveals_private_field_and_relationship(self, engine):

        result = engine.run("Post", "read", {"filter": {"id": POST_1}}, load=["secret", "author"])
        payload = json.loads(result.json)

        assert payload[0]["secret"] == "s1"
        assert payload[0]["author"]["email"] == "ann@example.com"

    def test_load_callable_receives_input(self, engine):

        seen = []

        def load(input):
            seen.append(input)
            return ["secret"]

        result = engine.run("Post", "search", {"input": {"term": "x"}, "limit": 1}, load=load)

        assert seen == [{"term": "x"}]
        assert "secret" in json.loads(result.json)[0]

    def test_sort_and_offset(self, engine):

        result = engine.run("Post", "read", {"sort": [{"field": "views", "direction": "desc"}], "offset": 1})

        assert [r["id"] for r in result.raw] == [POST_1, POST_2]

    def test_condition_list_filter(self, engine):

        args = {"filter": [{"field": "views", "operator": "gt", "value": 6}, {"or": [
            {"field": "title", "operator": "eq", "value": "World"},
            {"field": "title", "operator": "contains", "value": "hel"},
        ]}]}

        result = engine.run("Post", "read", args)

        assert sorted(r["id"] for r in result.raw) == sorted([POST_1, POST_3])

    def test_not_combinator(self, engine):

        result = engine.run("Post", "read", {"filter": {"not": {"title": "Hello"}}})

        assert [r["id"] for r in result.raw] == [POST_3]

    def test_count_ignores_pagination(self, engine):

        result = engine.run("Post", "read", {"result_type": "count", "limit": 1})

        assert json.loads(result.json) == 3

    def test_exists(self, engine):

        assert json.loads(engine.run("Post", "read", {"filter": {"title": "Nope"}, "result_type": "exists"}).json) is False
        assert json.loads(engine.run("Post", "read", {"filter": {"title": "World"}, "result_type": "exists"}).json) is True

    def test_aggregate(self, engine):

        result = engine.run("Post", "read", {"result_type": {"aggregate": "sum", "field": "views"}})

        assert json.loads(result.json) == 35

    def test_aggregate_on_private_field_fails(self, engine):

        result = engine.run("Post", "read", {"result_type": {"aggregate": "max", "field": "secret"}})

        assert isinstance(result, Failure)
        assert result.errors[0]["source"]["pointer"] == "/result_type/field"

    def test_private_field_in_filter_fails(self, engine):

        result = engine.run("Post", "read", {"filter": {"secret": {"eq": "s1"}}})

        assert not result.ok
        assert result.errors[0]["code"] == "invalid_filter"
        assert result.errors[0]["source"]["pointer"] == "/filter/secret/eq"

    @pytest.mark.parametrize("flt, pointer", [
        ({"or": "garbage"}, "/filter/or"),
        ({"and": ["x"]}, "/filter/and/0"),
        ({"not": "x"}, "/filter/not"),
        ({"and": [{"not": 3}]}, "/filter/and/0/not"),
    ])
    def test_malformed_combinator_is_a_bad_request(self, engine, flt, pointer):

        result = engine.run("Post", "read", {"filter": flt})

        assert result.errors[0]["status"] == 400
        assert result.errors[0]["source"]["pointer"] == pointer

    def test_unknown_sort_field_fails(self, engine):

        result = engine.run("Post", "read", {"sort": [{"field": "secret"}]})

        assert result.errors[0]["source"]["pointer"] == "/sort/0/field"

    def test_static_filter_and_max_page_size(self, engine):

        result = engine.run("Post", "read_published", {"limit": 10})

        assert {r["id"] for r in result.raw} == {POST_2, POST_3}

    def test_restricted_parameters_are_ignored(self, engine):

        result = engine.run("Post", "read", {"limit": 1, "result_type": "count"}, action_parameters=["filter"])

        assert isinstance(json.loads(result.json), list)
        assert len(result.raw) == 3

    def test_tenant_scoping(self, engine):

        result = engine.run("Note", "read", {}, ExecutionContext(tenant="acme"))

        assert [r["text"] for r in result.raw] == ["acme note"]

    def test_tenant_required(self, engine):

        result = engine.run("Note", "read", {})

        assert result.errors[0]["code"] == "tenant_required"


class TestCreate:

    def test_round_trip(self, engine):

        result = engine.run("Post", "create", {"input": {"title": "New", "secret": "hidden"}})
        payload = json.loads(result.json)

        assert result.ok
        for key, value in payload.items():
            assert result.raw[key] == value
        assert "secret" not in payload
        assert result.raw["views"] == 0

    def test_round_trip_with_private_load(self, engine):

        result = engine.run("Post", "create", {"input": {"title": "New", "secret": "hidden"}}, load=["secret"])

        assert json.loads(result.json)["secret"] == "hidden"

    def test_missing_required_field(self, engine):

        result = engine.run("Post", "create", {"input": {"body": "no title"}})

        assert result.errors[0]["status"] == 400
        assert result.errors[0]["source"]["pointer"] == "/input/title"

    def test_unknown_input_key(self, engine):

        result = engine.run("Post", "create", {"input": {"title": "x", "colour": "red", "size": 3}})

        assert [e["code"] for e in result.errors] == ["invalid_argument", "invalid_argument"]
        assert "valid inputs: title" in result.errors[0]["detail"]

    def test_bad_type(self, engine):

        result = engine.run("Post", "create", {"input": {"title": "x", "views": "lots"}})

        assert result.errors[0]["source"]["pointer"] == "/input/views"

    def test_tenant_is_stamped(self, engine, provider):

        engine.run("Note", "create", {"input": {"text": "hi"}}, ExecutionContext(tenant="acme"))

        assert provider.records("Note")[-1]["org"] == "acme"

    def test_raw_json_arguments(self, engine):

        assert engine.run("Post", "create", '{"input": {"title": "From text"}}').ok


class TestUpdateDelete:

    def test_update_by_primary_key(self, engine, provider):

        result = engine.run("Post", "update", {"id": POST_1, "input": {"title": "Changed"}})

        assert result.ok
        assert json.loads(result.json)["title"] == "Changed"
        assert provider.records("Post")[0]["title"] == "Changed"

    def test_update_missing_record(self, engine):

        result = engine.run("Post", "update", {"id": MISSING, "input": {"title": "x"}})

        assert isinstance(result, Failure)
        assert result.errors[0]["status"] == 404
        assert result.errors[0]["detail"]

    def test_update_without_identity_argument(self, engine):

        result = engine.run("Post", "update", {"input": {"title": "x"}})

        assert result.errors[0]["code"] == "not_found"

    def test_update_by_named_identity(self, engine, provider):

        result = engine.run(
            "Author", "rename",
            {"email": "ann@example.com", "input": {"name": "Annie"}},
            identity=IdentitySpec.named("unique_email"),
        )

        assert result.ok
        assert provider.records("Author")[0]["name"] == "Annie"

    def test_disabled_identity_without_filter_is_invalid(self, engine):

        result = engine.run("Post", "update", {"input": {"title": "x"}}, identity=IdentitySpec.disabled())

        assert result.errors[0]["code"] == "invalid_query"

    def test_destroy_post(self, engine, provider):

        result = engine.run("Post", "destroy", {"id": POST_2}, ExecutionContext(actor=ADMIN))

        assert result.ok
        assert POST_2 not in [r["id"] for r in provider.records("Post")]

    def test_destroy_missing_post(self, engine):

        result = engine.run("Post", "destroy", {"id": MISSING}, ExecutionContext(actor=ADMIN))
        entry = result.errors[0]

        assert 400 <= entry["status"] < 600
        assert entry["detail"]
        assert entry["meta"] == {"entity": "Post", "identity": {"id": MISSING}}

    def test_destroy_forbidden(self, engine, provider):

        result = engine.run("Post", "destroy", {"id": POST_1}, ExecutionContext(actor=WRITER))

        assert result.errors[0]["status"] == 403
        assert len(provider.records("Post")) == 3


class TestCustom:

    def test_returns_value(self, engine):

        result = engine.run("Post", "word_count", {"input": {"text": "one two three"}})

        assert json.loads(result.json) == 3

    def test_no_return_type_is_success(self, engine):

        assert json.loads(engine.run("Post", "ping", None).json) == "success"

    def test_missing_argument(self, engine):

        result = engine.run("Post", "word_count", {"input": {}})

        assert result.errors[0]["code"] == "required"

    def test_unexpected_error_is_a_500(self, engine):

        result = engine.run("Post", "boom", {})
        entry = result.errors[0]

        assert entry["status"] == 500
        assert entry["code"] == "something_went_wrong"
        assert "kaboom" not in entry["detail"]
        assert entry["id"] in entry["detail"]

    def test_show_raised_errors(self, provider):

        result = ExecutionEngine(provider, show_raised_errors=True).run("Post", "boom", {})

        assert "kaboom" in result.errors[0]["detail"]

    def test_unknown_operation_is_a_failure(self, engine):

        result = engine.run("Post", "nope", {})

        assert not result.ok
        assert result.errors[0]["status"] == 500


def test_author_relationship_many(engine):

    result = engine.run("Author", "read", {}, load=["posts"])

    assert {p["id"] for p in json.loads(result.json)[0]["posts"]} == {POST_1, POST_2}
    assert AUTHOR_1 == result.raw[0]["id"]


class TestLoadedRelationships:

    def _notes(self, result):

        return [n["text"] for n in json.loads(result.json)[0]["notes"]]

    def test_related_rows_stay_in_the_tenant(self, engine):

        result = engine.run("Author", "read", {}, ExecutionContext(tenant="acme"), load=["notes"])

        assert self._notes(result) == ["acme note"]

    def test_no_tenant_loads_no_tenant_rows(self, engine):

        result = engine.run("Author", "read", {}, load=["notes"])

        assert self._notes(result) == []

    def test_policy_applies_to_the_destination(self, provider, engine):

        provider.policy = RolePolicy({"Note.read": {"admin"}})

        hidden = engine.run("Author", "read", {}, ExecutionContext(actor=WRITER, tenant="globex"), load=["notes"])
        shown = engine.run("Author", "read", {}, ExecutionContext(actor=ADMIN, tenant="globex"), load=["notes"])

        assert self._notes(hidden) == []
        assert self._notes(shown) == ["globex note"]
