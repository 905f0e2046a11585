# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""LanguageGenerator: prompts in, continuations out."""
