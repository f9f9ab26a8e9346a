import json

import pytest

from intentflow.errors import IntentSpecValidationError
from intentflow.models.intent_spec import (
    ExecutionPath,
    FallbackPath,
    IntentSpec,
    IntentStep,
    validate_spec,
)


def login_spec_dict(**overrides):
    data = {
        "name": "login_flow",
        "url": "https://example.com/login",
        "params": ["USERNAME", "PASSWORD"],
        "steps": [
            {
                "name": "fill_username",
                "ai_instruction": "Fill the username field with {{USERNAME}}",
                "snippet": "await page.fill('#username', '{{USERNAME}}');",
                "selector": "#username",
                "value": "{{USERNAME}}",
                "prefer": "snippet",
                "fallback": "ai",
            },
            {
                "name": "fill_password",
                "ai_instruction": "Fill the password field",
                "snippet": "await page.fill('#password', '{{ PASSWORD }}');",
                "prefer": "snippet",
                "fallback": "none",
            },
        ],
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Loading & validation
# ---------------------------------------------------------------------------

def test_from_dict_builds_frozen_spec():
    spec = IntentSpec.from_dict(login_spec_dict())
    assert spec.name == "login_flow"
    assert [s.name for s in spec.steps] == ["fill_username", "fill_password"]
    assert spec.steps[0].fallback_path is ExecutionPath.AI
    assert spec.steps[1].fallback_path is None
    with pytest.raises(Exception):
        spec.name = "other"


def test_save_and_load_roundtrip(tmp_path):
    spec = IntentSpec.from_dict(login_spec_dict())
    path = tmp_path / "specs" / "login.json"
    spec.save(path)
    assert IntentSpec.load(path) == spec


def test_undeclared_parameter_is_an_error_naming_it():
    data = login_spec_dict(params=["PASSWORD"])
    with pytest.raises(IntentSpecValidationError) as exc:
        IntentSpec.from_dict(data)
    assert any("USERNAME" in e for e in exc.value.errors)


def test_declared_but_unused_parameter_is_a_warning():
    spec = IntentSpec.model_validate(login_spec_dict(params=["USERNAME", "PASSWORD", "UNUSED"]))
    result = validate_spec(spec)
    assert result.is_valid
    assert any("UNUSED" in w for w in result.warnings)


def test_fallback_equal_to_prefer_is_rejected():
    data = login_spec_dict()
    data["steps"][0]["fallback"] = "snippet"
    with pytest.raises(IntentSpecValidationError, match="must differ"):
        IntentSpec.from_dict(data)


def test_duplicate_steps_and_params_are_rejected():
    data = login_spec_dict(params=["USERNAME", "USERNAME", "PASSWORD"])
    data["steps"][1]["name"] = "fill_username"
    with pytest.raises(IntentSpecValidationError) as exc:
        IntentSpec.from_dict(data)
    assert any("Duplicate parameter" in e for e in exc.value.errors)
    assert any("Duplicate step name" in e for e in exc.value.errors)


def test_empty_steps_rejected():
    with pytest.raises(IntentSpecValidationError, match="no steps"):
        IntentSpec.from_dict({"name": "empty", "steps": []})


def test_invalid_json_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(IntentSpecValidationError, match="Invalid JSON"):
        IntentSpec.load(path)


def test_missing_prefer_uses_preferences():
    data = {
        "name": "prefs",
        "preferences": {"dynamic_elements": "ai", "simple_steps": "snippet"},
        "steps": [
            {"name": "simple", "ai_instruction": "Click Go", "snippet": "await page.click('#go');",
             "selector": "#go"},
            {"name": "dynamic", "ai_instruction": "Pick the cheapest flight"},
        ],
    }
    spec = IntentSpec.from_dict(data)
    assert spec.steps[0].prefer is ExecutionPath.SNIPPET
    assert spec.steps[1].prefer is ExecutionPath.AI


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

def test_substitute_replaces_tokens_in_all_fields():
    step = IntentSpec.from_dict(login_spec_dict()).steps[0]
    concrete = step.substitute({"USERNAME": "alice"})
    assert concrete.ai_instruction == "Fill the username field with alice"
    assert concrete.snippet == "await page.fill('#username', 'alice');"
    assert concrete.value == "alice"
    # Original is untouched
    assert "{{USERNAME}}" in step.snippet


def test_substitute_tolerates_whitespace_and_leaves_unknown_tokens():
    step = IntentStep(name="s", snippet="{{ PASSWORD }} {{OTHER}}", prefer=ExecutionPath.SNIPPET)
    assert step.substitute({"PASSWORD": "pw"}).snippet == "pw {{OTHER}}"


def test_check_variables_lists_missing_params():
    spec = IntentSpec.from_dict(login_spec_dict())
    assert spec.check_variables({"USERNAME": "alice"}) == ["PASSWORD"]
    assert spec.check_variables({"USERNAME": "alice", "PASSWORD": ""}) == ["PASSWORD"]
    assert spec.check_variables({"USERNAME": "a", "PASSWORD": "b"}) == []


def test_spec_json_uses_enum_values(tmp_path):
    spec = IntentSpec.from_dict(login_spec_dict())
    path = tmp_path / "out.json"
    spec.save(path)
    data = json.loads(path.read_text())
    assert data["steps"][0]["prefer"] == "snippet"
    assert data["steps"][1]["fallback"] == FallbackPath.NONE.value
