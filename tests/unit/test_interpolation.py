import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "../..")))

import uuid

import pytest

from interpolation import (
    MISSING,
    build_interpolation_context,
    build_user_variables,
    deep_merge,
    get_value_from_context,
    interpolate,
    interpolate_object,
    render_request,
)
from journey_models import Journey, UserContext


@pytest.fixture
def context():
    return {
        "token": "abc",
        "count": 3,
        "flag": False,
        "nothing": None,
        "user": {"name": "ann", "addresses": [{"city": "Oslo"}, {"city": "Rome"}]},
        "tags": ["a", "b"],
    }


def test_get_value_from_context(context):
    assert get_value_from_context(context, "user.name") == "ann"
    assert get_value_from_context(context, "user.addresses[1].city") == "Rome"
    assert get_value_from_context(context, "tags[0]") == "a"
    assert get_value_from_context(context, "nothing") is None
    assert get_value_from_context(context, "user.age") is MISSING
    assert get_value_from_context(context, "tags[5]") is MISSING
    assert get_value_from_context(context, "token.length") is MISSING
    assert get_value_from_context(context, "") is MISSING


def test_placeholders_are_always_strings(context):
    assert interpolate("Bearer {{token}}", context) == "Bearer abc"
    assert interpolate("{{count}}", context) == "3"
    assert interpolate("{{ flag }}", context) == "false"
    assert interpolate("[{{nothing}}]", context) == "[]"
    assert interpolate("{{user.addresses[0]}}", context) == '{"city":"Oslo"}'
    assert interpolate("{{tags}}", context) == '["a","b"]'


def test_unknown_placeholders_are_left_alone(context):
    assert interpolate("/items/{{missing}}/{{token}}", context) == "/items/{{missing}}/abc"


def test_var_tokens(context):
    assert interpolate("##VAR:unquoted:count##", context) == 3
    assert interpolate("##VAR:unquoted:user.addresses##", context) == context["user"]["addresses"]
    assert interpolate("##VAR:string:count##", context) == "3"
    assert interpolate("##VAR:string:flag##", context) == "false"
    assert interpolate("##VAR:unquoted:missing##", context) is None
    assert interpolate("##VAR:string:missing##", context) == ""
    # only whole-string tokens are replaced
    assert interpolate("id=##VAR:string:count##", context) == "id=##VAR:string:count##"


def test_non_strings_pass_through(context):
    assert interpolate(5, context) == 5
    assert interpolate(None, context) is None


def test_interpolate_object_walks_keys_values_and_lists(context):
    template = {
        "{{token}}": "{{user.name}}",
        "items": [{"qty": "##VAR:unquoted:count##"}, "{{missing}}"],
        "fixed": 1.5,
    }
    assert interpolate_object(template, context) == {
        "abc": "ann",
        "items": [{"qty": 3}, "{{missing}}"],
        "fixed": 1.5,
    }


def test_deep_merge_merges_nested_dicts_without_sharing():
    source = {"a": {"b": 1}}
    merged = deep_merge({"a": {"c": 2}, "x": 1}, source)
    assert merged == {"a": {"b": 1, "c": 2}, "x": 1}

    fresh = deep_merge({}, source)
    fresh["a"]["b"] = 99
    assert source == {"a": {"b": 1}}


def test_build_interpolation_context_adds_builtins_and_drops_internal_keys():
    context = build_interpolation_context({"a": 1, "__internal": "x"}, None, {"a": 2, "b": {"c": 3}})
    assert context["a"] == 2
    assert context["b"] == {"c": 3}
    assert "__internal" not in context
    uuid.UUID(context["$uuid"])
    assert isinstance(context["$timestamp"], int)
    assert context["$isoTimestamp"].endswith("Z")


def test_user_variable_precedence():
    user = UserContext(
        profile_name="buyer",
        user_data={"email": "a@example.com"},
        variables={"tier": "gold", "region": "eu"},
        generated_values={"tier": "generated", "orderId": 7},
    )
    variables = build_user_variables(
        user,
        journey_variables={"region": "us", "currency": "EUR", "user": "journey-level"},
        environment={"API_KEY": "k"},
    )
    assert variables == {
        "region": "eu",
        "currency": "EUR",
        "tier": "generated",
        "orderId": 7,
        "env": {"API_KEY": "k"},
        "user": {"email": "a@example.com"},
        "profile": "buyer",
    }


def test_user_variables_without_user():
    assert build_user_variables(None, {"a": 1}) == {"a": 1, "env": {}}


def make_journey(request, **extra) -> Journey:
    data = {"id": "j", "name": "J", "steps": [{"id": "s1", "request": request}]}
    data.update(extra)
    return Journey.model_validate(data)


def test_render_request():
    journey = make_journey(
        {
            "method": "post",
            "url": "/users/{{user.id}}/orders",
            "headers": {"Authorization": "Bearer {{token}}"},
            "json": {"qty": "##VAR:unquoted:qty##", "note": "for {{user.id}}"},
            "queryParams": {"page": "{{page}}"},
        },
        baseUrl="http://api.test/v1",
        defaults={"headers": {"Accept": "application/json", "Authorization": "none"}, "timeout": 5},
    )
    context = {"user": {"id": 9}, "token": "t", "qty": 2, "page": 1}
    rendered = render_request(journey.steps[0], journey, context)

    assert rendered.step_id == "s1"
    assert rendered.method == "POST"
    assert rendered.url == "http://api.test/v1/users/9/orders"
    assert rendered.headers == {"Accept": "application/json", "Authorization": "Bearer t"}
    assert rendered.json_body == {"qty": 2, "note": "for 9"}
    assert rendered.body is None
    assert rendered.query_params == {"page": "1"}
    assert rendered.timeout == 5
    assert rendered.model_dump(by_alias=True)["json"] == {"qty": 2, "note": "for 9"}


def test_render_request_url_resolution():
    relative = make_journey({"method": "GET", "url": "health"})
    assert render_request(relative.steps[0], relative, {}, base_url="http://fallback:8080/").url == "http://fallback:8080/health"
    assert render_request(relative.steps[0], relative, {}).url == "health"

    absolute = make_journey({"method": "GET", "url": "https://other.test/x"}, baseUrl="http://api.test")
    assert render_request(absolute.steps[0], absolute, {}).url == "https://other.test/x"


def test_render_request_raw_body_and_step_timeout():
    journey = make_journey({"method": "PUT", "url": "/x", "body": "name={{name}}", "timeout": 2.5})
    rendered = render_request(journey.steps[0], journey, {"name": "ann"}, base_url="http://h")
    assert rendered.body == "name=ann"
    assert rendered.timeout == 2.5
