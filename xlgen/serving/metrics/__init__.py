# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""Per-call generation metrics."""
