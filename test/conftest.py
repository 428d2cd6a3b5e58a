# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging

import pytest

from vpcmesh._logging_config import NOISY_LOGGERS


def pytest_configure(config):
    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(logging.WARNING)


@pytest.fixture(autouse=True)
def no_real_aws_profile(monkeypatch):
    # never pick up a developer's credentials or config from ~/.aws
    monkeypatch.setenv("AWS_CONFIG_FILE", "/dev/null")
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", "/dev/null")
    monkeypatch.delenv("AWS_PROFILE", raising=False)
