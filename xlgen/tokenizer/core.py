# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tokenizer adapter for generation.

Wraps a Hugging Face ``tokenizers`` object behind the two calls the
generator makes:

  encode(text, max_len, truncation_strategy) -> list[int]
  decode(ids, skip_special_tokens, clean_up_tokenization_spaces) -> str

Tokenizers are loaded from a directory holding either ``tokenizer.json``
or a GPT-2 style ``vocab.json`` + ``merges.txt`` pair. Encoding never adds
special tokens; the generator decides what goes in front of a prompt.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from tokenizers import Tokenizer
from tokenizers.implementations import ByteLevelBPETokenizer

from xlgen.logging.logger import get_logger

logger: logging.Logger = get_logger(__name__)

TRUNCATION_STRATEGIES = ("longest_first", "only_first", "only_second", "do_not_truncate")

# Special tokens registered when they exist in the vocabulary, so that
# decode(skip_special_tokens=True) drops them.
KNOWN_SPECIAL_TOKENS = (
    "<|endoftext|>",
    "<s>", "</s>", "<unk>", "<pad>", "<sep>", "<cls>", "<mask>", "<eod>", "<eop>",
)

_CLEAN_UP_REPLACEMENTS = (
    (" .", "."),
    (" ?", "?"),
    (" !", "!"),
    (" ,", ","),
    (" ' ", "'"),
    (" n't", "n't"),
    (" 'm", "'m"),
    (" 's", "'s"),
    (" 've", "'ve"),
    (" 're", "'re"),
)


def clean_up_tokenization(text: str) -> str:
    """Remove the spaces a word-level decode leaves before punctuation and contractions."""
    for old, new in _CLEAN_UP_REPLACEMENTS:
        text = text.replace(old, new)
    return text


def _check_strategy(truncation_strategy: str) -> None:
    if truncation_strategy not in TRUNCATION_STRATEGIES:
        raise ValueError(
            f"Unknown truncation strategy '{truncation_strategy}'. Choose from {TRUNCATION_STRATEGIES}"
        )


class TokenizerAdapter:
    """
    Generation-facing view of a ``tokenizers`` tokenizer.

    Args:
        tokenizer: A ``tokenizers.Tokenizer`` or one of the
            ``tokenizers.implementations`` wrappers.
    """

    def __init__(self, tokenizer: Any) -> None:
        self._tokenizer = tokenizer

    @classmethod
    def from_directory(cls, tokenizer_dir: Path) -> "TokenizerAdapter":
        """
        Load ``tokenizer.json``, or ``vocab.json`` + ``merges.txt``.

        Raises:
            FileNotFoundError: Neither layout is present.
        """
        tokenizer_dir = Path(tokenizer_dir)
        tokenizer_json = tokenizer_dir / "tokenizer.json"
        vocab_json = tokenizer_dir / "vocab.json"
        merges_txt = tokenizer_dir / "merges.txt"

        if tokenizer_json.is_file():
            tokenizer = Tokenizer.from_file(str(tokenizer_json))
            source = tokenizer_json
        elif vocab_json.is_file() and merges_txt.is_file():
            tokenizer = ByteLevelBPETokenizer(str(vocab_json), str(merges_txt))
            source = vocab_json
        else:
            raise FileNotFoundError(
                f"No tokenizer.json or vocab.json + merges.txt in {tokenizer_dir}"
            )

        adapter = cls(tokenizer)
        adapter.register_special_tokens(KNOWN_SPECIAL_TOKENS)
        logger.info(
            "Tokenizer loaded",
            extra={"path": str(source), "vocab_size": adapter.vocab_size},
        )
        return adapter

    @property
    def vocab_size(self) -> int:
        return self._tokenizer.get_vocab_size()

    def token_to_id(self, token: str) -> Optional[int]:
        return self._tokenizer.token_to_id(token)

    def register_special_tokens(self, tokens: tuple[str, ...]) -> list[str]:
        """Mark the given tokens as special when they are in the vocabulary."""
        present = [token for token in tokens if self._tokenizer.token_to_id(token) is not None]
        if present:
            self._tokenizer.add_special_tokens(present)
        return present

    def encode(
        self,
        text: str,
        max_len: Optional[int] = None,
        truncation_strategy: str = "longest_first",
        text_pair: Optional[str] = None,
    ) -> list[int]:
        """
        Token ids of ``text`` (and ``text_pair``), at most ``max_len`` of them.

        Truncation is done by ``tokenizers`` itself; ``longest_first`` keeps
        the shorter sequence whole when it fits in half of ``max_len``.

        Raises:
            ValueError: The input is too long under ``do_not_truncate``, the
                chosen sequence is too short to absorb the cut, or the
                strategy is unknown.
        """
        _check_strategy(truncation_strategy)

        if max_len is None or truncation_strategy == "do_not_truncate":
            self._tokenizer.no_truncation()
            ids = self._tokenizer.encode(text, text_pair, add_special_tokens=False).ids
            if max_len is not None and len(ids) > max_len:
                raise ValueError(
                    f"Input of {len(ids)} tokens is longer than max_len={max_len} "
                    "and truncation_strategy is 'do_not_truncate'"
                )
            return ids

        self._tokenizer.enable_truncation(max_len, strategy=truncation_strategy)
        try:
            return self._tokenizer.encode(text, text_pair, add_special_tokens=False).ids
        except Exception as err:
            raise ValueError(f"Cannot truncate to {max_len} tokens with '{truncation_strategy}': {err}") from err
        finally:
            self._tokenizer.no_truncation()

    def decode(
        self,
        token_ids: list[int],
        skip_special_tokens: bool = True,
        clean_up_tokenization_spaces: bool = True,
    ) -> str:
        text = self._tokenizer.decode(list(token_ids), skip_special_tokens=skip_special_tokens)
        if clean_up_tokenization_spaces:
            text = clean_up_tokenization(text)
        return text
