# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Layer implementations shared by the GPT-2 and XLNet models.
"""
