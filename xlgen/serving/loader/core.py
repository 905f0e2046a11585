# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Artifact loader for generation.

Finds the weights, architecture and tokenizer of a GPT-2 or XLNet export
on disk, checks the weights against ``checksums.sha256`` when one is
present, and hands back a ready-to-use bundle.

Expected directory layout (the Hugging Face export layout):

  config.json                   architecture, "model_type": "gpt2" | "xlnet"
  pytorch_model.bin | model.pt  torch state dict
  tokenizer.json | vocab.json + merges.txt
  checksums.sha256              optional

The loader is strict. A checksum mismatch, a missing weights file or a
state dict that doesn't cover the model stops here with an error.
Everything is local; no network access happens.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import torch

from xlgen.config.loader import read_json_mapping
from xlgen.config.schema import ModelConfig, RuntimeConfig
from xlgen.logging.logger import get_logger
from xlgen.model.config import GPT2Config, XLNetConfig
from xlgen.model.gpt2 import GPT2LMHeadModel
from xlgen.model.interfaces import LanguageModelBase
from xlgen.model.xlnet import XLNetLMHeadModel
from xlgen.tokenizer.core import TokenizerAdapter
from xlgen.utils.hashing import CHECKSUM_MANIFEST, compute_sha256, read_checksum_manifest

logger: logging.Logger = get_logger(__name__)

AnyModelConfig = Union[GPT2Config, XLNetConfig]

WEIGHTS_FILENAMES = ("pytorch_model.bin", "model.pt")

# Buffers some GPT-2 exports carry that this implementation recomputes.
_IGNORED_KEY_SUFFIXES = (".attn.bias", ".attn.masked_bias")

_HEAD_PREFIXES = ("lm_head.", "lm_loss.")


@dataclass(frozen=True)
class LoadedArtifacts:
    """Everything the generator needs, bundled together after loading."""

    model: LanguageModelBase
    tokenizer: Optional[TokenizerAdapter]
    model_config: AnyModelConfig
    device: torch.device
    weights_path: Optional[Path]


def resolve_device(device_str: str) -> torch.device:
    """``"auto"`` picks CUDA when available, otherwise CPU."""
    if device_str == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        return torch.device("cpu")
    return torch.device(device_str)


def find_model_weights(model_dir: Path) -> Path:
    """
    Locate the weights file: the standard names first, then any ``.bin`` / ``.pt``.

    Raises:
        FileNotFoundError: Nothing found.
    """
    for name in WEIGHTS_FILENAMES:
        candidate = model_dir / name
        if candidate.is_file():
            return candidate

    candidates = sorted(model_dir.glob("*.bin")) + sorted(model_dir.glob("*.pt"))
    if candidates:
        return candidates[0]

    raise FileNotFoundError(f"No model weights (.bin or .pt file) found in {model_dir}")


def verify_weights_checksum(weights_path: Path) -> None:
    """
    Check the weights file against the manifest next to it.

    A missing manifest (or a manifest without an entry for the file) only
    logs a warning. A mismatch raises.

    Raises:
        RuntimeError: Digest mismatch.
    """
    manifest_path = weights_path.parent / CHECKSUM_MANIFEST
    if not manifest_path.is_file():
        logger.warning(
            "No checksum manifest for weights, skipping verification",
            extra={"weights": str(weights_path)},
        )
        return

    expected = read_checksum_manifest(manifest_path).get(weights_path.name)
    if expected is None:
        logger.warning(
            "Checksum manifest has no entry for weights, skipping verification",
            extra={"weights": str(weights_path), "manifest": str(manifest_path)},
        )
        return

    actual = compute_sha256(weights_path)
    if actual != expected:
        raise RuntimeError(
            f"Weights checksum mismatch for {weights_path.name}. "
            f"Expected: {expected[:16]}... Got: {actual[:16]}... "
            "The model file may be corrupted."
        )
    logger.info("Weights checksum verified", extra={"hash": actual[:16] + "..."})


def model_config_from_settings(model_cfg: ModelConfig, seed: int = 42) -> AnyModelConfig:
    """Bridge the YAML ``model`` section to the plain model config."""
    token_ids = {
        key: value
        for key, value in (
            ("bos_token_id", model_cfg.bos_token_id),
            ("eos_token_id", model_cfg.eos_token_id),
            ("pad_token_id", model_cfg.pad_token_id),
        )
        if value is not None
    }
    if model_cfg.type == "gpt2":
        return GPT2Config(
            vocab_size=model_cfg.vocab_size,
            n_positions=model_cfg.n_positions,
            n_embd=model_cfg.d_model,
            n_layer=model_cfg.n_layer,
            n_head=model_cfg.n_head,
            n_inner=model_cfg.d_inner,
            resid_pdrop=model_cfg.dropout,
            embd_pdrop=model_cfg.dropout,
            attn_pdrop=model_cfg.dropout,
            layer_norm_epsilon=model_cfg.layer_norm_eps,
            seed=seed,
            **token_ids,
        )
    return XLNetConfig(
        vocab_size=model_cfg.vocab_size,
        d_model=model_cfg.d_model,
        n_layer=model_cfg.n_layer,
        n_head=model_cfg.n_head,
        d_inner=model_cfg.d_inner if model_cfg.d_inner is not None else 4 * model_cfg.d_model,
        attn_type=model_cfg.attn_type,
        dropout=model_cfg.dropout,
        layer_norm_eps=model_cfg.layer_norm_eps,
        mem_len=model_cfg.mem_len,
        clamp_len=model_cfg.clamp_len,
        seed=seed,
        **token_ids,
    )


def model_config_from_json(config_path: Path, seed: int = 42) -> AnyModelConfig:
    """
    Read a Hugging Face ``config.json``.

    Raises:
        ValueError: ``model_type`` is neither gpt2 nor xlnet.
    """
    raw = dict(read_json_mapping(config_path))
    model_type = raw.get("model_type", "gpt2")
    raw.setdefault("seed", seed)
    if model_type == "gpt2":
        return GPT2Config.from_dict(raw)
    if model_type == "xlnet":
        return XLNetConfig.from_dict(raw)
    raise ValueError(f"Unsupported model_type '{model_type}' in {config_path}")


def build_model(model_config: AnyModelConfig) -> LanguageModelBase:
    if isinstance(model_config, GPT2Config):
        return GPT2LMHeadModel(model_config)
    if isinstance(model_config, XLNetConfig):
        return XLNetLMHeadModel(model_config)
    raise TypeError(f"Unsupported model config: {type(model_config).__name__}")


def normalize_state_dict(state_dict: Mapping[str, Any]) -> dict[str, torch.Tensor]:
    """
    Map checkpoint keys onto the LM head model's names.

    Bare body keys (``h.0.attn.c_attn.weight``, ``layer.0.rel_attn.q``) get
    the ``transformer.`` prefix; head keys are kept; recomputed attention
    buffers are dropped.
    """
    normalized: dict[str, torch.Tensor] = {}
    for key, tensor in state_dict.items():
        if key.endswith(_IGNORED_KEY_SUFFIXES):
            continue
        if not key.startswith("transformer.") and not key.startswith(_HEAD_PREFIXES):
            key = f"transformer.{key}"
        normalized[key] = tensor
    return normalized


def load_weights(model: LanguageModelBase, weights_path: Path) -> None:
    """
    Load a state dict into ``model``.

    The tied output projection may be absent from the file. Any other
    missing or unexpected key is an error.

    Raises:
        RuntimeError: The file doesn't match the model.
    """
    raw = torch.load(weights_path, map_location="cpu", weights_only=True)
    state_dict = normalize_state_dict(raw)
    incompatible = model.load_state_dict(state_dict, strict=False)

    missing = [key for key in incompatible.missing_keys if key not in ("lm_head.weight", "lm_loss.weight")]
    if missing or incompatible.unexpected_keys:
        raise RuntimeError(
            f"Weights in {weights_path} don't match the model. "
            f"Missing: {missing[:10]} Unexpected: {list(incompatible.unexpected_keys)[:10]}"
        )
    model.tie_weights()


def load_tokenizer(tokenizer_dir: Path) -> Optional[TokenizerAdapter]:
    """Tokenizer from ``tokenizer_dir``, or None (with a warning) if there isn't one."""
    try:
        return TokenizerAdapter.from_directory(tokenizer_dir)
    except FileNotFoundError:
        logger.warning(
            "Tokenizer not found, text generation will not work",
            extra={"path": str(tokenizer_dir)},
        )
        return None


def load_artifacts(
    runtime_cfg: RuntimeConfig,
    model_cfg: Optional[ModelConfig] = None,
    seed: int = 42,
    project_root: Optional[Path] = None,
) -> LoadedArtifacts:
    """
    Load model and tokenizer in one shot.

      1. Resolve the device and the model directory
      2. Read the architecture from config.json, or from ``model_cfg``
      3. Find the weights and verify their checksum
      4. Build the model, load the weights, move to the device, eval mode
      5. Load the tokenizer

    Args:
        runtime_cfg: Paths and device.
        model_cfg: Architecture to use when the directory has no config.json.
        seed: Seed for the (overwritten) initial weights.
        project_root: Base for relative paths, defaults to the working directory.
    """
    device = resolve_device(runtime_cfg.device)
    root = project_root if project_root is not None else Path.cwd()
    model_dir = root / runtime_cfg.model_path

    if not model_dir.is_dir():
        raise FileNotFoundError(f"Model directory not found: {model_dir}")

    config_json = model_dir / "config.json"
    if config_json.is_file():
        model_config = model_config_from_json(config_json, seed=seed)
    elif model_cfg is not None:
        model_config = model_config_from_settings(model_cfg, seed=seed)
    else:
        raise FileNotFoundError(f"No config.json in {model_dir} and no model section in the config")

    weights_path = find_model_weights(model_dir)
    if runtime_cfg.verify_checksum:
        verify_weights_checksum(weights_path)

    model = build_model(model_config)
    load_weights(model, weights_path)
    model = model.to(device)
    model.eval()

    tokenizer_dir = root / runtime_cfg.tokenizer_path if runtime_cfg.tokenizer_path else model_dir
    tokenizer = load_tokenizer(tokenizer_dir)

    logger.info(
        "Artifacts loaded successfully",
        extra={
            "device": str(device),
            "model_type": type(model).__name__,
            "parameters": model.count_parameters(),
            "model_path": str(model_dir),
        },
    )

    return LoadedArtifacts(
        model=model,
        tokenizer=tokenizer,
        model_config=model_config,
        device=device,
        weights_path=weights_path,
    )
