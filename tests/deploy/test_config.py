"""Tests for spine_devops.deploy.config: target_env, credentials and from_env."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from spine_devops.core.errors import CredentialsError
from spine_devops.deploy.config import (
    AwsCredentials,
    BuildConfig,
    CiMetadata,
    DeployConfig,
    MigrateConfig,
    target_env,
)


class TestTargetEnv:
    """``{ENV}_{NAME}`` wins and is exported unprefixed."""

    def test_prefixed_wins_and_is_exported(self):
        with patch.dict(os.environ, {"PROD_AWS_REGION": "eu-west-1", "AWS_REGION": "us-east-1"}, clear=True):
            assert target_env("prod", "AWS_REGION") == "eu-west-1"
            assert os.environ["AWS_REGION"] == "eu-west-1"

    def test_falls_back_to_plain(self):
        with patch.dict(os.environ, {"AWS_REGION": "us-east-1"}, clear=True):
            assert target_env("dev", "AWS_REGION") == "us-east-1"

    def test_missing(self):
        with patch.dict(os.environ, {}, clear=True):
            assert target_env("dev", "NOPE") == ""


class TestAwsCredentials:
    def test_static_keys(self):
        env = {"DEV_AWS_ACCESS_KEY_ID": "AKIA", "AWS_SECRET_ACCESS_KEY": "s3cr3t", "AWS_REGION": "us-east-1"}
        with patch.dict(os.environ, env, clear=True):
            creds = AwsCredentials.from_env("dev")
        assert creds.access_key_id == "AKIA"
        assert creds.secret_access_key.get_secret_value() == "s3cr3t"
        assert not creds.use_role
        assert "s3cr3t" not in repr(creds)

    def test_role(self):
        with patch.dict(os.environ, {"AWS_USE_ROLE": "true", "AWS_DEFAULT_REGION": "us-west-2"}, clear=True):
            creds = AwsCredentials.from_env("dev")
        assert creds.use_role
        assert creds.region == "us-west-2"

    def test_region_required(self):
        with patch.dict(os.environ, {"AWS_USE_ROLE": "true"}, clear=True):
            with pytest.raises(CredentialsError, match="AWS_REGION"):
                AwsCredentials.from_env("dev")

    def test_keys_required_without_role(self):
        with patch.dict(os.environ, {"AWS_REGION": "us-east-1", "AWS_ACCESS_KEY_ID": "x"}, clear=True):
            with pytest.raises(CredentialsError, match="AWS_USE_ROLE"):
                AwsCredentials.from_env("dev")


class TestCiMetadata:
    def test_buildinfo_wins(self):
        env = {"CI_COMMIT_SHA": "aaa", "BUILDINFO_CI_COMMIT_SHA": "bbb", "CI_JOB_ID": "42"}
        with patch.dict(os.environ, env, clear=True):
            ci = CiMetadata.from_env()
        assert ci.commit_sha == "bbb"
        assert ci.job_id == "42"

    def test_commit_falls_back_to_ref(self):
        assert CiMetadata(commit_ref_name="main").commit == "main"
        assert CiMetadata(commit_sha="abc", commit_ref_name="main").commit == "abc"


class TestCommandConfigs:
    def test_run_id_and_env_normalised(self):
        config = BuildConfig(service="web-api", env=" DEV ")
        assert config.env == "dev"
        assert len(config.run_id) == 12

    def test_build_from_env_max_images(self):
        with patch.dict(os.environ, {"AWS_REPOSITORY_MAX_IMAGES": "50"}, clear=True):
            config = BuildConfig.from_env(service="web-api", env="dev")
        assert config.max_images == 50

    def test_deploy_from_env_precedence(self):
        env = {"PROD_HTTPS_ENABLED": "true", "HOST_NAMES": "a.acme.test,b.acme.test", "ELB_ENABLED": "1"}
        with patch.dict(os.environ, env, clear=True):
            config = DeployConfig.from_env(service="web-api", env="prod", enable_elb=False)
        assert config.enable_https is True
        assert config.host_names == ["a.acme.test", "b.acme.test"]
        assert config.enable_elb is False

    def test_none_overrides_are_ignored(self):
        with patch.dict(os.environ, {"AWS_S3_BUCKET_PRIVATE": "from-env"}, clear=True):
            config = DeployConfig.from_env(service="web-api", env="dev", private_bucket=None)
        assert config.private_bucket == "from-env"

    def test_desired_count_validated(self):
        from pydantic import ValidationError

        with pytest.raises(ValidationError):
            DeployConfig(service="web-api", env="dev", desired_count=0)

    def test_credentials_not_dumped_in_clear(self):
        from pydantic import SecretStr

        creds = AwsCredentials(access_key_id="AKIA", secret_access_key=SecretStr("s3cr3t"), region="us-east-1")
        config = DeployConfig(service="web-api", env="dev", credentials=creds)
        assert "s3cr3t" not in config.model_dump_json()

    def test_migrate_from_env(self, tmp_path):
        with patch.dict(os.environ, {"SPINE_DEVOPS_MIGRATIONS_DIR": str(tmp_path)}, clear=True):
            config = MigrateConfig.from_env(env="stage")
        assert config.migrations_dir == tmp_path
        assert config.run_id
