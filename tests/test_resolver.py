"""
Tests for variable resolution and the resolution context.
"""

import pytest

from conftest import NOW_MS, USER

from hypernote.resolution import (
    FixedClock,
    ResolutionContext,
    VariableResolver,
    evaluate_time_expression,
    extract_references,
    is_reference,
)


@pytest.fixture
def context():
    return ResolutionContext(
        query_results={"$contacts": ["abc", "def"], "$profile": {"name": "alice", "tags": [["t", "x"]]}},
        action_results={"@post": "e" * 64},
        form_data={"message": "hello", "empty": ""},
        user_pubkey=USER,
        target={"pubkey": "b" * 64, "name": "bob"},
        clock=FixedClock(now=NOW_MS),
    )


@pytest.fixture
def resolver(context):
    return VariableResolver(context)


# =============================================================================
# Reference detection
# =============================================================================


class TestReferenceDetection:
    """Tests for bare token and template detection."""

    @pytest.mark.parametrize(
        "text",
        ["$contacts", "$profile.name", "@post", "user.pubkey", "target.name", "form.message", "time.now - 1000"],
    )
    def test_references(self, text):
        assert is_reference(text)

    @pytest.mark.parametrize("text", ["hello", "@alice hi there", "$$escaped", "user", "abc"])
    def test_plain_text(self, text):
        assert not is_reference(text)

    def test_extract_references_keeps_first_seen_order(self):
        filter_ = {"authors": ["$contacts", "user.pubkey"], "#e": ["{@post}"], "#p": ["$contacts.0"]}

        assert extract_references(filter_) == ["$contacts", "@post"]

    def test_escape_is_never_a_reference(self):
        assert extract_references({"#t": ["$$tag", "{$$tag}"]}) == []


# =============================================================================
# Resolution
# =============================================================================


class TestResolve:
    """Tests for VariableResolver.resolve."""

    def test_bare_query_reference(self, resolver):
        assert resolver.resolve("$contacts") == ["abc", "def"]

    def test_path_into_query_result(self, resolver):
        assert resolver.resolve("$profile.name") == "alice"
        assert resolver.resolve("$profile.tags[0][1]") == "x"

    def test_builtins(self, resolver):
        assert resolver.resolve("user.pubkey") == USER
        assert resolver.resolve("target.name") == "bob"
        assert resolver.resolve("form.message") == "hello"
        assert resolver.resolve("time.now") == NOW_MS

    def test_action_reference(self, resolver):
        assert resolver.resolve("@post") == "e" * 64

    def test_full_template_keeps_raw_value(self, resolver):
        assert resolver.resolve("{$contacts}") == ["abc", "def"]

    def test_mixed_template_substitutes_text(self, resolver):
        assert resolver.resolve("hi {target.name}, {form.message}!") == "hi bob, hello!"

    def test_mixed_template_serializes_containers(self, resolver):
        assert resolver.resolve("list={$contacts}") == 'list=["abc","def"]'

    def test_unresolved_kept_verbatim(self, resolver):
        assert resolver.resolve("$missing") == "$missing"
        assert resolver.resolve("hi {$missing.name}") == "hi {$missing.name}"

    def test_missing_replacement(self, resolver):
        assert resolver.resolve("hi {$missing}", missing="") == "hi "

    def test_escape_kept_verbatim(self, resolver):
        assert resolver.resolve("$$contacts") == "$$contacts"

    def test_plain_text_untouched(self, resolver):
        assert resolver.resolve("@alice hi") == "@alice hi"
        assert resolver.resolve('{"a": 1}') == '{"a": 1}'

    def test_recurses_containers(self, resolver):
        value = {"a": ["$contacts", {"b": "user.pubkey"}], "n": 3}

        assert resolver.resolve(value) == {"a": [["abc", "def"], {"b": USER}], "n": 3}

    def test_loop_variable_shadows_query(self, context):
        scoped = context.with_loop_variables({"$contacts": ["zzz"]})

        assert VariableResolver(scoped).resolve("$contacts") == ["zzz"]
        assert VariableResolver(context).resolve("$contacts") == ["abc", "def"]


class TestOrFallback:
    """Tests for ``a or b`` expressions."""

    def test_left_when_present(self, resolver):
        assert resolver.resolve("{form.message or 'none'}") == "hello"

    def test_literal_when_missing(self, resolver):
        assert resolver.resolve("{$count or 0}") == 0

    def test_empty_string_falls_through(self, resolver):
        assert resolver.resolve("{form.empty or 'anon'}") == "anon"

    def test_second_reference(self, resolver):
        assert resolver.resolve("{$missing or target.name}") == "bob"


class TestTimeExpressions:
    """Tests for time.now arithmetic."""

    def test_subtraction(self):
        assert evaluate_time_expression("time.now - 86400000", 1_000_000_000) == 913_600_000

    def test_parentheses_and_floor_division(self):
        assert evaluate_time_expression("(time.now - 1000) // 1000", 11_000) == 10

    def test_rejects_other_code(self):
        assert evaluate_time_expression("time.now.__class__", 1000) is None
        assert evaluate_time_expression("__import__('os')", 1000) is None

    def test_in_filter(self, resolver):
        assert resolver.resolve("{time.now - 1000}") == NOW_MS - 1000


# =============================================================================
# Pending detection and filters
# =============================================================================


class TestFindUnresolved:
    """Tests for find_unresolved."""

    def test_resolved_filter_has_none(self, resolver):
        assert resolver.find_unresolved({"authors": ["$contacts"], "kinds": [1]}) == []

    def test_reports_bare_and_templates(self, resolver):
        filter_ = {"authors": ["$follows"], "#e": ["{@reply}"], "kinds": [1]}

        assert resolver.find_unresolved(filter_) == ["$follows", "{@reply}"]

    def test_missing_user(self):
        resolver = VariableResolver(ResolutionContext())

        assert resolver.find_unresolved({"authors": ["user.pubkey"]}) == ["user.pubkey"]

    def test_missing_target(self):
        resolver = VariableResolver(ResolutionContext(user_pubkey=USER))

        assert resolver.find_unresolved({"authors": ["target.pubkey"]}) == ["target.pubkey"]

    def test_resolved_data_with_sigil_is_not_pending(self):
        context = ResolutionContext(query_results={"$tags": ["$notaref"]})

        assert VariableResolver(context).find_unresolved({"#t": ["$tags"]}) == []


class TestResolveFilter:
    """Tests for resolve_filter."""

    def test_list_results_are_spread(self, resolver):
        resolved = resolver.resolve_filter({"kinds": [1], "authors": ["$contacts", "user.pubkey"], "limit": 20})

        assert resolved == {"kinds": [1], "authors": ["abc", "def", USER], "limit": 20}

    def test_scalar_fields(self, resolver):
        resolved = resolver.resolve_filter({"since": "{time.now - 1000}", "#e": ["@post"]})

        assert resolved == {"since": NOW_MS - 1000, "#e": ["e" * 64]}

    def test_collect_variables(self, resolver):
        variables = resolver.collect_variables({"authors": ["user.pubkey"], "#e": ["{@post}"]})

        assert variables == {"user.pubkey": USER, "@post": "e" * 64}


# =============================================================================
# Context
# =============================================================================


class TestResolutionContext:
    """Tests for ResolutionContext."""

    def test_derive_isolates_scope(self, context):
        context.update(loop_variables={"item": 1})
        child = context.derive(target={"pubkey": "c" * 64})

        assert child.target == {"pubkey": "c" * 64}
        assert child.loop_variables == {}
        assert child.scope_id != context.scope_id
        child.set_query_result("feed", [1])
        assert "$feed" not in context.query_results

    def test_names_normalized(self):
        context = ResolutionContext()
        context.set_query_result("feed", [1])
        context.set_action_result("like", "id1")

        assert context.get_query_result("$feed") == [1]
        assert context.get_action_result("@like") == "id1"

    def test_time_now_from_clock(self):
        clock = FixedClock(now=1000)
        context = ResolutionContext(clock=clock)
        clock.advance(500)

        assert context.time_now == 1500
