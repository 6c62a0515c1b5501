import json
import logging
import sys

import pytest

from appdeploy.azure_cli import AzureCli, AzureCredentials
from appdeploy.commands import CommandRunner, DryRunRunner
from appdeploy.errors import CommandError, ConfigError
from appdeploy.config import SecretNames, Secrets
from appdeploy.log import SecretMaskingFilter, register_secrets, setup_logging

from conftest import CREDENTIALS, FakeRunner


def test_runner_returns_output():
    result = CommandRunner().run([sys.executable, "-c", "print('hello')"])
    assert result.returncode == 0
    assert result.stdout.strip() == "hello"


def test_runner_passes_env_and_stdin():
    code = "import os, sys; print(os.environ['APPDEPLOY_TEST'] + sys.stdin.read())"
    result = CommandRunner(env={"APPDEPLOY_TEST": "a"}).run([sys.executable, "-c", code], input="b")
    assert result.stdout.strip() == "ab"


def test_runner_raises_on_failure():
    with pytest.raises(CommandError) as excinfo:
        CommandRunner().run([sys.executable, "-c", "import sys; sys.stderr.write('bad'); sys.exit(3)"])
    assert excinfo.value.returncode == 3
    assert excinfo.value.stderr == "bad"


def test_missing_binary_is_a_command_error():
    with pytest.raises(CommandError) as excinfo:
        CommandRunner().run(["definitely-not-a-real-binary-xyz"])
    assert excinfo.value.returncode == 127


def test_dry_run_does_not_execute(tmp_path):
    marker = tmp_path / "marker"
    DryRunRunner().run([sys.executable, "-c", f"open({str(marker)!r}, 'w')"])
    assert not marker.exists()


def test_credentials_parse():
    creds = AzureCredentials.parse(json.dumps(CREDENTIALS))
    assert creds.subscription_id == CREDENTIALS["subscriptionId"]
    assert creds.terraform_env() == {"ARM_SUBSCRIPTION_ID": CREDENTIALS["subscriptionId"]}
    assert creds.pulumi_env()["ARM_TENANT_ID"] == CREDENTIALS["tenantId"]

    with pytest.raises(ConfigError, match="not valid JSON"):
        AzureCredentials.parse("{")
    with pytest.raises(ConfigError, match="tenantId"):
        AzureCredentials.parse(json.dumps({"clientId": "a", "clientSecret": "b", "subscriptionId": "c"}))


@pytest.mark.parametrize("stdout,expected", [("true\n", True), ("false\n", False), ("", False)])
def test_group_exists(stdout, expected):
    runner = FakeRunner(responses={"az group exists": stdout})
    assert AzureCli(runner).group_exists("tfstate-rg") is expected
    assert runner.lines == ["az group exists --name tfstate-rg"]


def test_secret_masking_filter():
    masking = SecretMaskingFilter()
    masking.add("hunter22", None, "abc")
    record = logging.LogRecord("t", logging.INFO, __file__, 1, "password is %s", ("hunter22",), None)

    assert masking.filter(record)
    assert record.getMessage() == "password is ***"
    # too short to mask safely
    assert masking.mask("abc") == "abc"


@pytest.fixture
def log_file(tmp_path):
    root = logging.getLogger()
    saved, level = list(root.handlers), root.level
    path = tmp_path / "appdeploy.log"
    setup_logging(logging.INFO, str(path))
    yield path
    for handler in root.handlers:
        handler.close()
    root.handlers[:] = saved
    root.setLevel(level)


def test_login_never_logs_the_client_secret(log_file):
    # Only the JSON blob is a configured secret; the client secret is parsed out of it
    Secrets(SecretNames(), {"AZURE_CREDENTIALS": json.dumps(CREDENTIALS)})
    credentials = AzureCredentials.parse(json.dumps(CREDENTIALS))
    AzureCli(DryRunRunner()).login(credentials)

    text = log_file.read_text()
    assert "az login --service-principal" in text
    assert "--password ***" in text
    assert CREDENTIALS["clientSecret"] not in text


def test_setup_logging_starts_with_no_secrets(tmp_path):
    register_secrets(["left-over-secret"])
    root = logging.getLogger()
    saved, level = list(root.handlers), root.level
    path = tmp_path / "appdeploy.log"
    try:
        setup_logging(logging.INFO, str(path))
        Secrets(SecretNames(), {"MYSQL_ADMIN_PASSWORD": "mysql-password-value"})
        logging.getLogger("appdeploy.test").info("left-over-secret mysql-password-value")
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved
        root.setLevel(level)

    assert path.read_text().rstrip().endswith("left-over-secret ***")
