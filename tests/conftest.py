# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Shared pytest fixtures for xlgen tests.

Fixtures here are available to every test file automatically.
Model-sized fixtures live in tests/model/conftest.py and
tests/serving/conftest.py.
"""

import textwrap
from pathlib import Path

import pytest


@pytest.fixture()
def tmp_config_file(tmp_path: Path) -> Path:
    """The smallest config that passes schema validation."""
    config_content = textwrap.dedent("""\
        global:
          config_version: "1.0.0"
          project_name: "xlgen-test"
          seed: 42
          log_level: "DEBUG"
    """)
    config_file = tmp_path / "test_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file


@pytest.fixture()
def full_config_file(tmp_path: Path) -> Path:
    """A config with every section filled in."""
    config_content = textwrap.dedent("""\
        global:
          config_version: "1.0.0"
          project_name: "xlgen-full"
          seed: 7
          log_level: "INFO"
        attention:
          d_model: 32
          n_head: 4
          d_head: 8
          dropout: 0.0
        model:
          config_version: "1.0.0"
          type: "xlnet"
          vocab_size: 64
          n_layer: 2
          d_model: 32
          n_head: 4
          d_inner: 64
          dropout: 0.0
          attn_type: "uni"
          eos_token_id: 1
          pad_token_id: 2
        generation:
          max_length: 12
          num_beams: 3
          num_return_sequences: 2
          repetition_penalty: 1.2
        runtime:
          config_version: "1.0.0"
          model_path: "exports"
          device: "cpu"
    """)
    config_file = tmp_path / "full_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file


@pytest.fixture()
def invalid_config_file(tmp_path: Path) -> Path:
    """Valid YAML that fails schema validation (missing config_version)."""
    config_content = textwrap.dedent("""\
        global:
          project_name: "xlgen-test"
          seed: 42
    """)
    config_file = tmp_path / "invalid_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file


@pytest.fixture()
def broken_yaml_file(tmp_path: Path) -> Path:
    """A file that isn't valid YAML at all."""
    config_file = tmp_path / "broken.yaml"
    config_file.write_text("{{not: yaml: at: all:::", encoding="utf-8")
    return config_file
