# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Type-safe configuration schemas for xlgen.

Each YAML section maps to a frozen pydantic model:

  global:      seed, logging
  attention:   relative attention hyperparameters
  model:       architecture of the language model used for generation
  generation:  decoding options (greedy / beam search)
  runtime:     where weights and tokenizer live, which device to use

All models use ``frozen=True`` (no mutation after load), ``extra="forbid"``
(typos fail loudly) and ``validate_default=True``. Cross-field rules that a
single ``Field`` constraint can't express live in ``model_validator`` hooks.
"""

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class GlobalConfig(BaseModel):
    """Cross-cutting settings: reproducibility and log output."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(
        description="Schema version for compatibility tracking, e.g. '1.0.0'"
    )
    project_name: str = Field(default="xlgen", description="Human-readable identifier")
    seed: int = Field(default=42, ge=0, description="Seed applied to torch before any model is built")
    log_level: str = Field(
        default="INFO",
        description="One of DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    log_file: Optional[str] = Field(
        default=None,
        description="Optional path for file-based log output",
    )


class AttentionConfig(BaseModel):
    """
    Hyperparameters of a single relative attention layer.

    A standalone layer config that no loader consumes. Pass it straight
    to ``XLNetRelativeAttention(config.attention)`` to get one layer.
    Full models read their head layout from the ``model`` section.

    ``layer_norm_eps`` and ``output_attentions`` are the only optional
    values; everything else must be spelled out.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    d_model: int = Field(ge=1, description="Hidden size")
    n_head: int = Field(ge=1, description="Number of attention heads")
    d_head: int = Field(ge=1, description="Dimension per head")
    dropout: float = Field(ge=0.0, le=1.0, description="Dropout on probabilities and projection output")
    layer_norm_eps: float = Field(default=1e-12, gt=0.0, description="Post-attention LayerNorm epsilon")
    output_attentions: bool = Field(default=False, description="Return attention probabilities")

    @model_validator(mode="after")
    def _check_head_layout(self) -> "AttentionConfig":
        if self.d_model % self.n_head != 0:
            raise ValueError(
                f"d_model ({self.d_model}) is not a multiple of n_head ({self.n_head})"
            )
        if self.n_head * self.d_head != self.d_model:
            raise ValueError(
                f"n_head * d_head ({self.n_head} * {self.d_head}) must equal d_model ({self.d_model})"
            )
        return self


class ModelConfig(BaseModel):
    """
    Language model architecture.

    Only needed when the weights directory has no ``config.json``; otherwise
    the loader reads the architecture from there.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(description="Schema version")
    type: Literal["gpt2", "xlnet"] = Field(default="gpt2", description="Model family")
    vocab_size: int = Field(default=50257, ge=2, description="Vocabulary size (must match tokenizer)")
    n_layer: int = Field(default=12, ge=1, description="Number of transformer blocks")
    d_model: int = Field(default=768, ge=1, description="Hidden size")
    n_head: int = Field(default=12, ge=1, description="Number of attention heads")
    d_inner: Optional[int] = Field(default=None, ge=1, description="Feedforward size, 4 * d_model when unset")
    n_positions: int = Field(default=1024, ge=1, description="GPT-2 context window")
    dropout: float = Field(default=0.1, ge=0.0, le=1.0, description="Dropout probability")
    layer_norm_eps: float = Field(default=1e-5, gt=0.0, description="LayerNorm epsilon")
    mem_len: Optional[int] = Field(default=None, ge=0, description="XLNet memory length, unbounded when unset")
    attn_type: Literal["bi", "uni"] = Field(default="bi", description="XLNet attention type")
    clamp_len: int = Field(default=-1, description="XLNet relative distance clamp, -1 disables")
    bos_token_id: Optional[int] = Field(default=None, ge=0)
    eos_token_id: Optional[int] = Field(default=None, ge=0)
    pad_token_id: Optional[int] = Field(default=None, ge=0)


class GenerationSettings(BaseModel):
    """
    Decoding options.

    Sampling is not supported: ``do_sample`` is accepted so existing config
    files stay readable, but it must be false.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    max_length: int = Field(default=20, ge=1, description="Maximum total length, prompt included")
    do_sample: bool = Field(default=False, description="Must be false: deterministic decoding only")
    num_beams: int = Field(default=1, ge=1, description="Beam width, 1 selects greedy decoding")
    temperature: float = Field(default=1.0, gt=0.0, description="Logit temperature")
    repetition_penalty: float = Field(default=1.0, ge=1.0, description="Penalty for already generated tokens")
    num_return_sequences: int = Field(default=1, ge=1, description="Sequences returned per prompt")
    length_penalty: float = Field(default=1.0, description="Exponent applied to hypothesis length in beam scores")
    early_stopping: bool = Field(default=False, description="Stop a beam group once num_beams hypotheses finished")

    @model_validator(mode="after")
    def _check_decoding_options(self) -> "GenerationSettings":
        if self.do_sample:
            raise ValueError("do_sample=true is not supported, only greedy and beam search decoding")
        if self.num_return_sequences > self.num_beams:
            raise ValueError(
                f"num_return_sequences ({self.num_return_sequences}) cannot exceed num_beams ({self.num_beams})"
            )
        return self


class RuntimeConfig(BaseModel):
    """Where the artifacts live and which device to run on."""

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    config_version: str = Field(description="Schema version")
    model_path: str = Field(description="Directory holding config.json and the weights file")
    tokenizer_path: Optional[str] = Field(
        default=None,
        description="Directory holding tokenizer.json or vocab.json + merges.txt, defaults to model_path",
    )
    device: str = Field(default="cpu", description="'cpu', 'cuda', 'cuda:N' or 'auto'")
    verify_checksum: bool = Field(default=True, description="Check weights against checksums.sha256 when present")


class XLGenConfig(BaseModel):
    """
    Top-level container. Only ``global`` is mandatory; each consumer checks
    for the sections it needs.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", validate_default=True)

    global_config: GlobalConfig = Field(alias="global")
    attention: Optional[AttentionConfig] = Field(default=None)
    model: Optional[ModelConfig] = Field(default=None)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    runtime: Optional[RuntimeConfig] = Field(default=None)
