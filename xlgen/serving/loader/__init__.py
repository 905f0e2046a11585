# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Weights, config and tokenizer loading."""
