import pytest

from controller.src.errors import LaunchError
from controller.src.services.credentials import (
    EnvCredentialProvider,
    StaticCredentialProvider,
    mask_secrets,
)

def test_env_provider_reads_prefixed_variables():
    provider = EnvCredentialProvider("RUNWAY_CREDENTIAL_", environ={
        "RUNWAY_CREDENTIAL_DOCKER_PASSWORD": "hunter2",
        "DOCKER_PASSWORD": "wrong",
    })

    assert provider.resolve(["DOCKER_PASSWORD"]) == {"DOCKER_PASSWORD": "hunter2"}
    assert provider.get("NPM_TOKEN") is None

def test_resolve_fails_on_missing_credential():
    provider = StaticCredentialProvider({"A": "1"})

    with pytest.raises(LaunchError, match="Credential 'B' is not available"):
        provider.resolve(["A", "B"])

def test_mask_secrets():
    assert mask_secrets("login hunter2 ok", ["hunter2", ""]) == "login **** ok"
