# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from setuptools import find_packages, setup
from src.vpcmesh import __version__ as version

REQUIRED_PACKAGES = [
    'boto3 >= 1.41.1',
    'python-dateutil >= 2.9.0',
    'dill >= 0.4.0',
    'shortuuid >= 1.0.13',
    'overrides >= 3.1.0',
]

TEST_PACKAGES = [
    'moto >= 5.0.0',
    'pytest',
    'mock'
]

setup(
    name="vpcmesh",
    python_requires=">=3.10",
    version=version,
    description="vpcmesh converges (and tears down) multi-region AWS VPC peering topologies.",
    keywords="aws cloud vpc peering network mesh multi-region ec2 infrastructure",
    author="Amazon.com Inc.",
    license="Apache 2.0",

    packages=find_packages(where="src", exclude=("test",)),
    package_dir={"": "src"},
    install_requires=REQUIRED_PACKAGES,
    tests_require=TEST_PACKAGES,
    extras_require={"test": TEST_PACKAGES},
    test_suite='test',
    include_package_data=True,
)
