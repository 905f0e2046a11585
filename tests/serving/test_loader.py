# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Tests for loading model and tokenizer artifacts from disk."""

import json
from pathlib import Path

import pytest
import torch

from xlgen.config.loader import load_config
from xlgen.config.schema import ModelConfig, RuntimeConfig
from xlgen.model.config import GPT2Config, XLNetConfig
from xlgen.model.gpt2 import GPT2LMHeadModel
from xlgen.model.xlnet import XLNetLMHeadModel
from xlgen.serving.engine.core import LanguageGenerator
from xlgen.serving.generation.core import GenerateConfig
from xlgen.serving.loader.core import (
    find_model_weights,
    load_artifacts,
    load_tokenizer,
    load_weights,
    model_config_from_json,
    model_config_from_settings,
    normalize_state_dict,
    resolve_device,
    verify_weights_checksum,
)
from xlgen.utils.hashing import state_dict_sha256


def _runtime(model_dir: Path, **overrides) -> RuntimeConfig:
    return RuntimeConfig(config_version="1.0.0", model_path=str(model_dir), **overrides)


class TestFindWeights:

    def test_prefers_standard_name(self, tmp_path: Path) -> None:
        (tmp_path / "other.bin").write_bytes(b"x")
        (tmp_path / "pytorch_model.bin").write_bytes(b"x")
        assert find_model_weights(tmp_path).name == "pytorch_model.bin"

    def test_falls_back_to_any_checkpoint(self, tmp_path: Path) -> None:
        (tmp_path / "weights.pt").write_bytes(b"x")
        assert find_model_weights(tmp_path).name == "weights.pt"

    def test_missing_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            find_model_weights(tmp_path)


class TestChecksum:

    def test_matching_checksum_passes(self, model_export_dir: Path) -> None:
        verify_weights_checksum(model_export_dir / "pytorch_model.bin")

    def test_mismatch_raises(self, model_export_dir: Path) -> None:
        (model_export_dir / "checksums.sha256").write_text(f"{'0' * 64}  pytorch_model.bin\n", encoding="utf-8")
        with pytest.raises(RuntimeError, match="checksum mismatch"):
            verify_weights_checksum(model_export_dir / "pytorch_model.bin")

    def test_missing_manifest_is_tolerated(self, model_export_dir: Path) -> None:
        (model_export_dir / "checksums.sha256").unlink()
        verify_weights_checksum(model_export_dir / "pytorch_model.bin")


class TestModelConfigs:

    def test_gpt2_from_json(self, model_export_dir: Path) -> None:
        config = model_config_from_json(model_export_dir / "config.json")
        assert isinstance(config, GPT2Config)
        assert config.n_embd == 32
        assert config.n_positions == 32

    def test_xlnet_from_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"model_type": "xlnet", "d_model": 32, "n_head": 4, "untie_r": True}))
        config = model_config_from_json(path)
        assert isinstance(config, XLNetConfig)
        assert config.d_head == 8

    def test_unknown_model_type(self, tmp_path: Path) -> None:
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"model_type": "bert"}))
        with pytest.raises(ValueError):
            model_config_from_json(path)

    def test_from_settings(self) -> None:
        settings = ModelConfig(
            config_version="1.0.0", type="xlnet", vocab_size=64, n_layer=2, d_model=32, n_head=4,
            attn_type="uni", eos_token_id=1,
        )
        config = model_config_from_settings(settings, seed=3)
        assert isinstance(config, XLNetConfig)
        assert config.attn_type == "uni"
        assert config.d_inner == 128
        assert config.eos_token_id == 1
        assert config.seed == 3


class TestWeights:

    def test_bare_keys_get_prefix(self) -> None:
        tensor = torch.zeros(1)
        normalized = normalize_state_dict({
            "wte.weight": tensor,
            "h.0.attn.bias": tensor,
            "lm_head.weight": tensor,
            "transformer.ln_f.weight": tensor,
        })
        assert set(normalized) == {"transformer.wte.weight", "lm_head.weight", "transformer.ln_f.weight"}

    def test_roundtrip_through_disk(self, tmp_path: Path, tiny_xlnet: XLNetLMHeadModel) -> None:
        path = tmp_path / "pytorch_model.bin"
        body = {k: v for k, v in tiny_xlnet.state_dict().items() if not k.startswith("lm_loss.weight")}
        torch.save(body, path)

        fresh = XLNetLMHeadModel(XLNetConfig(**{**_xlnet_kwargs(), "seed": 99}))
        load_weights(fresh, path)

        assert state_dict_sha256(fresh.state_dict()) == state_dict_sha256(tiny_xlnet.state_dict())
        assert fresh.lm_loss.weight is fresh.transformer.word_embedding.weight

    def test_incomplete_state_dict_raises(self, tmp_path: Path, tiny_gpt2: GPT2LMHeadModel) -> None:
        path = tmp_path / "pytorch_model.bin"
        partial = {k: v for k, v in tiny_gpt2.state_dict().items() if not k.startswith("transformer.h.1.")}
        torch.save(partial, path)
        with pytest.raises(RuntimeError):
            load_weights(GPT2LMHeadModel(tiny_gpt2.config), path)


def _xlnet_kwargs() -> dict:
    return {
        "vocab_size": 64, "d_model": 32, "n_layer": 2, "n_head": 4, "d_inner": 64,
        "dropout": 0.0, "bos_token_id": 0, "eos_token_id": 1, "pad_token_id": 2,
    }


class TestLoadArtifacts:

    def test_loads_everything(self, model_export_dir: Path, tiny_gpt2: GPT2LMHeadModel) -> None:
        artifacts = load_artifacts(_runtime(model_export_dir))
        assert isinstance(artifacts.model, GPT2LMHeadModel)
        assert artifacts.tokenizer is not None
        assert artifacts.device == torch.device("cpu")
        assert artifacts.weights_path.name == "pytorch_model.bin"
        assert not artifacts.model.training
        assert state_dict_sha256(artifacts.model.state_dict()) == state_dict_sha256(tiny_gpt2.state_dict())

    def test_loaded_artifacts_generate(self, model_export_dir: Path) -> None:
        artifacts = load_artifacts(_runtime(model_export_dir))
        generator = LanguageGenerator(artifacts.model, artifacts.tokenizer, artifacts.device)
        texts = generator.generate(["w4 w5"], GenerateConfig(max_length=5))
        assert texts[0].startswith("w4 w5")

    def test_relative_model_path(self, model_export_dir: Path) -> None:
        runtime = RuntimeConfig(config_version="1.0.0", model_path=model_export_dir.name)
        artifacts = load_artifacts(runtime, project_root=model_export_dir.parent)
        assert artifacts.weights_path.parent == model_export_dir

    def test_model_section_used_without_config_json(
        self, model_export_dir: Path, tiny_gpt2: GPT2LMHeadModel
    ) -> None:
        (model_export_dir / "config.json").unlink()
        settings = ModelConfig(
            config_version="1.0.0", type="gpt2", vocab_size=64, n_layer=2, d_model=32, n_head=4,
            n_positions=32, dropout=0.0, eos_token_id=1, bos_token_id=0,
        )
        artifacts = load_artifacts(_runtime(model_export_dir), model_cfg=settings)
        assert state_dict_sha256(artifacts.model.state_dict()) == state_dict_sha256(tiny_gpt2.state_dict())

    def test_no_architecture_raises(self, model_export_dir: Path) -> None:
        (model_export_dir / "config.json").unlink()
        with pytest.raises(FileNotFoundError):
            load_artifacts(_runtime(model_export_dir))

    def test_missing_directory_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_artifacts(_runtime(tmp_path / "nope"))

    def test_checksum_can_be_skipped(self, model_export_dir: Path) -> None:
        (model_export_dir / "checksums.sha256").write_text(f"{'0' * 64}  pytorch_model.bin\n", encoding="utf-8")
        with pytest.raises(RuntimeError):
            load_artifacts(_runtime(model_export_dir))
        artifacts = load_artifacts(_runtime(model_export_dir, verify_checksum=False))
        assert artifacts.model is not None

    def test_from_yaml_config(self, runtime_config_yaml: Path) -> None:
        config = load_config(runtime_config_yaml)
        artifacts = load_artifacts(config.runtime, config.model, seed=config.global_config.seed)
        assert artifacts.tokenizer is not None
        assert artifacts.tokenizer.vocab_size == 64


class TestHelpers:

    def test_resolve_device(self) -> None:
        assert resolve_device("cpu") == torch.device("cpu")
        assert resolve_device("auto").type in ("cpu", "cuda")

    def test_missing_tokenizer_returns_none(self, tmp_path: Path) -> None:
        assert load_tokenizer(tmp_path) is None
