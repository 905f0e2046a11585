# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Per-layer decoding state arena."""
