# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Logits processing and beam bookkeeping."""
