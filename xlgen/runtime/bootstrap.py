# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Runtime bootstrap for xlgen.

One-time setup before a model is built:
  1. Set deterministic seeds
  2. Configure the package logger from the global config section

Library users who build models by hand can skip this; the models seed
their own initialization and ``get_logger`` falls back to stdout at INFO.
"""

import os
import random
from pathlib import Path

import torch

from xlgen.config.schema import GlobalConfig
from xlgen.logging.logger import configure_logging, get_logger


def set_deterministic_seed(seed: int) -> None:
    """
    Seed Python's ``random``, PYTHONHASHSEED and torch (CPU and CUDA).

    On CUDA cuDNN is also put into deterministic mode.
    """
    random.seed(seed)
    os.environ["PYTHONHASHSEED"] = str(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)
        torch.backends.cudnn.deterministic = True  # type: ignore[attr-defined]
        torch.backends.cudnn.benchmark = False  # type: ignore[attr-defined]


def bootstrap(config: GlobalConfig) -> None:
    """Seed everything and configure logging."""
    set_deterministic_seed(config.seed)
    log_file = Path(config.log_file) if config.log_file else None
    configure_logging(log_level=config.log_level, log_file=log_file)

    logger = get_logger(__name__)
    logger.info(
        "xlgen bootstrap complete",
        extra={
            "project": config.project_name,
            "config_version": config.config_version,
            "seed": config.seed,
            "torch_version": torch.__version__,
        },
    )
