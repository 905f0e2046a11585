# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Shared fixtures for serving tests.

These fixtures create tiny models and a word-level tokenizer in temp
directories so the decoding loops can be tested without pretrained
weights. The models are small enough to run on CPU in under a second.

``make_bigram`` builds a model whose next-token logits depend only on the
last token. Its outputs are fully predictable, which is what the beam
search and repetition penalty tests need.
"""

import json
import textwrap
from pathlib import Path
from typing import Any, Callable, Optional

import pytest
import torch
from tokenizers import Tokenizer
from tokenizers.models import WordLevel
from tokenizers.pre_tokenizers import Whitespace

from xlgen.model.config import GPT2Config, XLNetConfig
from xlgen.model.gpt2 import GPT2LMHeadModel
from xlgen.model.interfaces import LanguageModelBase, LMOutput
from xlgen.model.xlnet import XLNetLMHeadModel
from xlgen.serving.cache.core import LayerCache
from xlgen.utils.hashing import compute_sha256

VOCAB_SIZE = 64


class BigramModel(LanguageModelBase):
    """Next-token logits looked up from a [vocab, vocab] table."""

    def __init__(self, table: torch.Tensor, bos: Optional[int] = 0, eos: Optional[int] = 1, pad: Optional[int] = 2):
        super().__init__()
        self.register_buffer("table", table)
        self._bos, self._eos, self._pad = bos, eos, pad
        self.calls = 0

    @property
    def vocab_size(self) -> int:
        return self.table.size(0)

    @property
    def n_layers(self) -> int:
        return 1

    @property
    def bos_token_id(self) -> Optional[int]:
        return self._bos

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._eos

    @property
    def pad_token_id(self) -> Optional[int]:
        return self._pad

    def prepare_inputs_for_generation(
        self, input_ids: torch.Tensor, cache: LayerCache, attention_mask: torch.Tensor
    ) -> dict[str, Any]:
        return {"input_ids": input_ids}

    def forward(self, input_ids: torch.Tensor, **kwargs: Any) -> LMOutput:
        self.calls += 1
        return LMOutput(logits=self.table[input_ids])


@pytest.fixture()
def make_bigram() -> Callable[..., BigramModel]:
    """
    Build a BigramModel from ``{token: {next_token: logit}}``.

    Every transition not listed gets ``fill``.
    """

    def _make(
        transitions: dict[int, dict[int, float]],
        vocab_size: int = 8,
        fill: float = -10.0,
        **token_ids: Optional[int],
    ) -> BigramModel:
        table = torch.full((vocab_size, vocab_size), fill)
        for src, targets in transitions.items():
            for dst, logit in targets.items():
                table[src, dst] = logit
        return BigramModel(table, **token_ids)

    return _make


@pytest.fixture()
def tiny_gpt2() -> GPT2LMHeadModel:
    config = GPT2Config(
        vocab_size=VOCAB_SIZE,
        n_positions=32,
        n_embd=32,
        n_layer=2,
        n_head=4,
        resid_pdrop=0.0,
        embd_pdrop=0.0,
        attn_pdrop=0.0,
        seed=0,
        bos_token_id=0,
        eos_token_id=1,
    )
    model = GPT2LMHeadModel(config)
    model.eval()
    return model


@pytest.fixture()
def tiny_xlnet() -> XLNetLMHeadModel:
    config = XLNetConfig(
        vocab_size=VOCAB_SIZE,
        d_model=32,
        n_layer=2,
        n_head=4,
        d_inner=64,
        dropout=0.0,
        seed=0,
        bos_token_id=0,
        eos_token_id=1,
        pad_token_id=2,
    )
    model = XLNetLMHeadModel(config)
    model.eval()
    return model


def _write_tokenizer(target_dir: Path) -> None:
    vocab = {"<s>": 0, "</s>": 1, "<pad>": 2, "<unk>": 3}
    vocab.update({f"w{i}": i for i in range(4, VOCAB_SIZE)})
    tokenizer = Tokenizer(WordLevel(vocab=vocab, unk_token="<unk>"))
    tokenizer.pre_tokenizer = Whitespace()
    tokenizer.save(str(target_dir / "tokenizer.json"))


@pytest.fixture()
def tokenizer_dir(tmp_path: Path) -> Path:
    """
    A word-level tokenizer: ``<s> </s> <pad> <unk>`` followed by ``w4`` .. ``w63``.

    Ids line up with the tiny models' vocabulary, so "w7" is token 7.
    """
    tok_dir = tmp_path / "tokenizer"
    tok_dir.mkdir()
    _write_tokenizer(tok_dir)
    return tok_dir


@pytest.fixture()
def model_export_dir(tmp_path: Path, tiny_gpt2: GPT2LMHeadModel) -> Path:
    """
    A directory laid out like a Hugging Face GPT-2 export: config.json,
    pytorch_model.bin, checksums.sha256 and tokenizer.json.
    """
    export_dir = tmp_path / "exports"
    export_dir.mkdir()

    config = {
        "model_type": "gpt2",
        "architectures": ["GPT2LMHeadModel"],
        "vocab_size": VOCAB_SIZE,
        "n_positions": 32,
        "n_embd": 32,
        "n_layer": 2,
        "n_head": 4,
        "resid_pdrop": 0.0,
        "embd_pdrop": 0.0,
        "attn_pdrop": 0.0,
        "bos_token_id": 0,
        "eos_token_id": 1,
    }
    (export_dir / "config.json").write_text(json.dumps(config, indent=2), encoding="utf-8")

    weights_path = export_dir / "pytorch_model.bin"
    torch.save(tiny_gpt2.state_dict(), weights_path)
    (export_dir / "checksums.sha256").write_text(
        f"{compute_sha256(weights_path)}  pytorch_model.bin\n",
        encoding="utf-8",
    )

    _write_tokenizer(export_dir)
    return export_dir


@pytest.fixture()
def runtime_config_yaml(tmp_path: Path, model_export_dir: Path, tokenizer_dir: Path) -> Path:
    """A config file with global, generation and runtime sections."""
    config_content = textwrap.dedent(f"""\
        global:
          config_version: "1.0.0"
          project_name: "xlgen-test"
          seed: 42
          log_level: "DEBUG"
        generation:
          max_length: 12
          num_beams: 2
          num_return_sequences: 2
        runtime:
          config_version: "1.0.0"
          device: "cpu"
          model_path: "{model_export_dir}"
          tokenizer_path: "{tokenizer_dir}"
    """)
    config_file = tmp_path / "test_runtime_config.yaml"
    config_file.write_text(config_content, encoding="utf-8")
    return config_file
