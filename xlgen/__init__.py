# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
xlgen: XLNet relative attention and deterministic GPT-2 / XLNet text generation.

Subpackages:
  config     YAML loading and pydantic schemas
  logging    structured JSON logging
  model      attention layers, layer state, GPT-2 and XLNet LM heads
  runtime    seeding and logging bootstrap
  serving    layer cache, greedy / beam generation, artifact loading
  tokenizer  adapter over the `tokenizers` library
  utils      hashing helpers
"""
