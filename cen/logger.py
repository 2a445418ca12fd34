"""
Structured logging shared by all CEN components
"""

__copyright__ = """
    Copyright 2020 EPFL

    Licensed under the Apache License, Version 2.0 (the "License");
    you may not use this file except in compliance with the License.
    You may obtain a copy of the License at

        http://www.apache.org/licenses/LICENSE-2.0

    Unless required by applicable law or agreed to in writing, software
    distributed under the License is distributed on an "AS IS" BASIS,
    WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
    See the License for the specific language governing permissions and
    limitations under the License.
"""
__license__ = "Apache 2.0"

import json
import logging
import sys
import time

#: Name of the root logger of this package
ROOT_LOGGER = "cen"


def get_logger(name=ROOT_LOGGER, level=None):
    """Return a logger that emits one JSON object per record

    A single stdout handler is attached to the package root logger the first
    time any logger is requested; component loggers (``cen.rotation``, ...)
    propagate to it.

    Args:
        name (str, optional): Logger name. Default: the package root logger.
        level (int, optional): Level to set on the returned logger

    Returns:
        logging.Logger: the requested logger
    """
    root = logging.getLogger(ROOT_LOGGER)

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            fmt=json.dumps(
                {
                    "ts": "%(asctime)s",
                    "level": "%(levelname)s",
                    "name": "%(name)s",
                    "msg": "%(message)s",
                }
            ),
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )
        formatter.converter = time.gmtime
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)

    return logger
