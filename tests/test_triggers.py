import json

import pytest

from appdeploy.errors import ConfigError
from appdeploy.triggers import (
    DISPATCH,
    PULL_REQUEST,
    PUSH,
    WORKFLOW_RUN,
    DispatchInput,
    TriggerEvent,
    TriggerFilter,
    path_matches,
    resolve_inputs,
    should_apply,
)

INFRA_FILTER = TriggerFilter(branches=["main"], paths=["terraform/*.tf"], events=[PUSH, PULL_REQUEST, DISPATCH])
DEPLOY_FILTER = TriggerFilter(
    branches=["main"],
    paths=["app.py", "Dockerfile"],
    upstream=["Infrastructure"],
    events=[WORKFLOW_RUN, PUSH, DISPATCH],
)


def test_push_to_main_with_matching_path():
    assert INFRA_FILTER.matches(TriggerEvent.push("main", ["terraform/main.tf"]))


def test_push_with_unrelated_paths_is_ignored():
    assert not INFRA_FILTER.matches(TriggerEvent.push("main", ["README.md"]))


def test_push_to_other_branch_is_ignored():
    assert not INFRA_FILTER.matches(TriggerEvent.push("feature", ["terraform/main.tf"]))


def test_pull_request_matches_on_base_branch():
    event = TriggerEvent.pull_request("main", ["terraform/variables.tf"])
    assert event.branch == "main"
    assert INFRA_FILTER.matches(event)


def test_pull_request_is_not_a_deploy_trigger():
    assert not DEPLOY_FILTER.matches(TriggerEvent.pull_request("main", ["app.py"]))


def test_upstream_completion_matches_only_named_workflow():
    assert DEPLOY_FILTER.matches(TriggerEvent.upstream("Infrastructure", "success"))
    assert DEPLOY_FILTER.matches(TriggerEvent.upstream("Infrastructure", "failure"))
    assert not DEPLOY_FILTER.matches(TriggerEvent.upstream("Nightly", "success"))


def test_dispatch_always_matches():
    assert INFRA_FILTER.matches(TriggerEvent.dispatch(environment="staging"))


@pytest.mark.parametrize("event,expected", [
    (TriggerEvent.push("main", ["terraform/main.tf"]), True),
    (TriggerEvent.push("develop", ["terraform/main.tf"]), False),
    (TriggerEvent.pull_request("main", ["terraform/main.tf"]), False),
    (TriggerEvent.dispatch(apply_changes=True), True),
    (TriggerEvent.dispatch(apply_changes=False), False),
    (TriggerEvent.upstream("Infrastructure", "success"), False),
])
def test_should_apply(event, expected):
    assert should_apply(event, "main") is expected


def test_boolean_input_coercion():
    flag = DispatchInput("apply_changes", type="boolean", required=True, default=False)
    assert flag.coerce("true") is True
    assert flag.coerce("False") is False
    assert flag.coerce(None) is False
    with pytest.raises(ConfigError):
        flag.coerce("maybe")


def test_choice_input_rejects_unknown_option():
    env = DispatchInput("environment", type="choice", required=True, options=["development", "production"])
    assert env.coerce("production") == "production"
    with pytest.raises(ConfigError, match="must be one of"):
        env.coerce("qa")
    with pytest.raises(ConfigError, match="required"):
        env.coerce(None)


def test_resolve_inputs_rejects_undeclared():
    declared = [DispatchInput("deploy", type="boolean", default=False)]
    assert resolve_inputs(declared, {"deploy": "true"}) == {"deploy": True}
    with pytest.raises(ConfigError, match="Unexpected inputs"):
        resolve_inputs(declared, {"deploy": "true", "force": "1"})


def test_from_github_env_dispatch(tmp_path):
    payload = tmp_path / "event.json"
    payload.write_text(json.dumps({"inputs": {"environment": "staging", "apply_changes": "true"}}))
    event = TriggerEvent.from_github_env({
        "GITHUB_EVENT_NAME": "workflow_dispatch",
        "GITHUB_EVENT_PATH": str(payload),
        "GITHUB_REF": "refs/heads/main",
    })
    assert event.name == DISPATCH
    assert event.inputs == {"environment": "staging", "apply_changes": "true"}
    assert event.branch == "main"


def test_from_github_env_workflow_run(tmp_path):
    payload = tmp_path / "event.json"
    payload.write_text(json.dumps({
        "action": "completed",
        "workflow_run": {"name": "Infrastructure", "conclusion": "success"},
    }))
    event = TriggerEvent.from_github_env({
        "GITHUB_EVENT_NAME": "workflow_run",
        "GITHUB_EVENT_PATH": str(payload),
    })
    assert event.workflow_run.workflow == "Infrastructure"
    assert event.workflow_run.conclusion == "success"


def test_from_github_env_push_reads_changed_paths():
    event = TriggerEvent.from_github_env({
        "GITHUB_EVENT_NAME": "push",
        "GITHUB_REF": "refs/heads/main",
        "APPDEPLOY_CHANGED_PATHS": "app.py,README.md",
    })
    assert event.changed_paths == ["app.py", "README.md"]
    assert DEPLOY_FILTER.matches(event)


def test_from_github_env_requires_event_name():
    with pytest.raises(ConfigError):
        TriggerEvent.from_github_env({})


@pytest.mark.parametrize("pattern,path,expected", [
    ("terraform/*.tf", "terraform/main.tf", True),
    ("terraform/*.tf", "terraform/modules/network.tf", False),
    ("terraform/**/*.tf", "terraform/modules/network.tf", True),
    ("terraform/**/*.tf", "terraform/main.tf", True),
    ("**/Dockerfile", "services/web/Dockerfile", True),
    ("app.py", "src/app.py", False),
])
def test_path_star_stays_in_one_directory(pattern, path, expected):
    assert path_matches(pattern, path) is expected


def test_nested_terraform_change_does_not_trigger_infrastructure():
    assert not INFRA_FILTER.matches(TriggerEvent.push("main", ["terraform/modules/network.tf"]))
