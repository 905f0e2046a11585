# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Inference side: layer cache, decoding strategies, generation engine, loading.
"""
