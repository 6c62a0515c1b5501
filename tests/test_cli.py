import json
import logging
import shutil

import pytest
import yaml

from appdeploy.__main__ import build_event, build_parser, main, parse_inputs
from appdeploy.errors import ConfigError
from appdeploy.triggers import DISPATCH, PUSH, WORKFLOW_RUN

from conftest import CREDENTIALS, REPO_ROOT


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    saved = list(root.handlers)
    yield
    root.handlers[:] = saved


@pytest.fixture
def project(tmp_path):
    shutil.copy(REPO_ROOT / "docker-compose.yaml", tmp_path / "docker-compose.yaml")
    shutil.copy(REPO_ROOT / "deploy.yaml", tmp_path / "deploy.yaml")
    return tmp_path


def test_compose_check(project, capsys):
    assert main(["--config", str(project / "deploy.yaml"), "compose", "check"]) == 0
    out = capsys.readouterr().out
    assert "2 services, 1 volumes" in out
    assert "mysql -> flask_app" in out


def test_compose_up_dry_run(project):
    assert main(["--config", str(project / "deploy.yaml"), "--dry-run", "compose", "up"]) == 0


def test_invalid_compose_exits_with_2(project):
    (project / "docker-compose.yaml").write_text(yaml.safe_dump({
        "services": {"app": {"image": "app", "depends_on": ["db"]}},
    }))
    assert main(["--config", str(project / "deploy.yaml"), "compose", "check"]) == 2


def test_bad_settings_exit_with_2(project):
    (project / "deploy.yaml").write_text(yaml.safe_dump({"main_branch": "main"}))
    assert main(["--config", str(project / "deploy.yaml"), "artifacts", "list"]) == 2


def test_artifacts_list_empty(project, capsys):
    assert main(["--config", str(project / "deploy.yaml"), "artifacts", "list"]) == 0
    assert capsys.readouterr().out == ""


def test_parse_inputs():
    assert parse_inputs(["deploy=true", "environment=staging"]) == {"deploy": "true", "environment": "staging"}
    with pytest.raises(ConfigError):
        parse_inputs(["deploy"])


def test_build_event_variants(settings):
    parser = build_parser()

    args = parser.parse_args(["infra", "--input", "environment=production", "--input", "apply_changes=true"])
    event = build_event(args, settings)
    assert event.name == DISPATCH
    assert event.inputs == {"environment": "production", "apply_changes": "true"}

    args = parser.parse_args(["infra", "--event", "push", "--changed", "terraform/main.tf"])
    event = build_event(args, settings)
    assert event.name == PUSH
    assert event.ref == "refs/heads/main"
    assert event.changed_paths == ["terraform/main.tf"]

    args = parser.parse_args(["deploy", "--event", "workflow_run", "--conclusion", "failure"])
    event = build_event(args, settings)
    assert event.name == WORKFLOW_RUN
    assert event.workflow_run.workflow == settings.delivery.upstream
    assert event.workflow_run.conclusion == "failure"


def test_build_event_from_github(settings, tmp_path, monkeypatch):
    payload = tmp_path / "event.json"
    payload.write_text(json.dumps({"inputs": {"deploy": True}}))
    monkeypatch.setenv("GITHUB_EVENT_NAME", "workflow_dispatch")
    monkeypatch.setenv("GITHUB_EVENT_PATH", str(payload))

    args = build_parser().parse_args(["deploy", "--event", "github"])
    assert build_event(args, settings).inputs == {"deploy": True}


def test_dry_run_never_touches_pulumi_stacks(project, fake_pulumi, monkeypatch, capsys):
    for name in ("config.yaml", "bootstrap.yaml"):
        shutil.copy(REPO_ROOT / name, project / name)
    monkeypatch.setenv("AZURE_CREDENTIALS", json.dumps(CREDENTIALS))
    monkeypatch.setenv("MYSQL_ADMIN_USERNAME", "mysqladmin")
    monkeypatch.setenv("MYSQL_ADMIN_PASSWORD", "mysql-password-value")

    code = main([
        "--config", str(project / "deploy.yaml"), "--dry-run",
        "infra", "--input", "environment=development", "--input", "apply_changes=true",
    ])

    assert code == 0
    assert fake_pulumi.calls == []
    assert "Infrastructure" in capsys.readouterr().out
