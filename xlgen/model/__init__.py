# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Model package: relative attention, causal attention, layer state,
and the GPT-2 / XLNet language model heads used by the generator.
"""
