# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import logging.handlers
import os
import sys
from pathlib import Path

""" 
Provide default logging setup 
"""

LOG_DATE_FORMAT = "%m/%d/%Y %I:%M:%S %p"
LOG_FORMAT = "%(levelname)s | %(asctime)-15s | %(message)s"
CORE_LOG_FILE = "vpcmesh_core.log"

# botocore is very chatty at DEBUG
NOISY_LOGGERS = ["botocore", "boto3", "urllib3"]


def init_basic_logging(log_dir=None, enable_console_logging=True, root_level=logging.INFO):
    logger = logging.getLogger()
    logger.setLevel(root_level)

    if enable_console_logging:
        # add stdout handler, with level INFO
        console = logging.StreamHandler(sys.stdout)
        console.setLevel(root_level)
        console_formatter = logging.Formatter("%(asctime)s - %(name)-13s: %(levelname)-8s %(message)s")
        console.setFormatter(console_formatter)
        logger.addHandler(console)

    # Add file rotating handler, with level DEBUG
    if log_dir:
        if not Path(log_dir).exists():
            Path(log_dir).mkdir(parents=True)
        rotatingHandler = logging.handlers.RotatingFileHandler(
            filename=str(log_dir) + os.path.sep + CORE_LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=5
        )
        rotatingHandler.setLevel(logging.DEBUG)
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(threadName)s - %(levelname)s - %(message)s")
        rotatingHandler.setFormatter(formatter)
        logger.addHandler(rotatingHandler)

    for noisy_logger in NOISY_LOGGERS:
        logging.getLogger(noisy_logger).setLevel(max(root_level, logging.WARNING))

    logging.basicConfig(format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT, level=root_level)

    return logger
