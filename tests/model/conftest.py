# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tiny models for layer and model tests.

Everything runs with dropout off and fixed seeds, small enough to finish
on CPU in well under a second.
"""

from types import SimpleNamespace

import pytest
import torch

from xlgen.model.config import GPT2Config, XLNetConfig
from xlgen.model.gpt2 import GPT2LMHeadModel
from xlgen.model.layers.attention.relative import XLNetRelativeAttention
from xlgen.model.xlnet import XLNetLMHeadModel


@pytest.fixture()
def attention_config() -> SimpleNamespace:
    return SimpleNamespace(
        d_model=32,
        n_head=4,
        d_head=8,
        dropout=0.0,
        layer_norm_eps=1e-12,
        output_attentions=True,
    )


@pytest.fixture()
def relative_attention(attention_config: SimpleNamespace) -> XLNetRelativeAttention:
    torch.manual_seed(0)
    layer = XLNetRelativeAttention(attention_config)
    layer.eval()
    return layer


@pytest.fixture()
def tiny_gpt2_config() -> GPT2Config:
    return GPT2Config(
        vocab_size=64,
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


@pytest.fixture()
def tiny_gpt2(tiny_gpt2_config: GPT2Config) -> GPT2LMHeadModel:
    model = GPT2LMHeadModel(tiny_gpt2_config)
    model.eval()
    return model


@pytest.fixture()
def tiny_xlnet_config() -> XLNetConfig:
    return XLNetConfig(
        vocab_size=64,
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


@pytest.fixture()
def tiny_xlnet(tiny_xlnet_config: XLNetConfig) -> XLNetLMHeadModel:
    model = XLNetLMHeadModel(tiny_xlnet_config)
    model.eval()
    return model
