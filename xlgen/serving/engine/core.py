# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Generation engine.

``LanguageGenerator`` ties a language model, a tokenizer and a decoding
strategy together. ``generate(["The cat"])`` does everything: encode and
left-pad the prompts, run the decoding loop with a fresh layer cache,
and decode the results.

The loop feeds the whole prompt on the first step and only the newest
token(s) after that; the model reads what it computed before from the
cache. Beam search keeps ``num_beams`` rows per input and reorders the
cache after every step so each row keeps the history of the beam it now
holds.

Nothing is shared between calls: the cache, masks and beam bookkeeping
are created inside ``generate_ids`` and dropped when it returns.
"""

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Optional, Sequence

import torch
import torch.nn.functional as F

from xlgen.logging.logger import get_logger
from xlgen.model.interfaces import LanguageModelBase
from xlgen.serving.cache.core import LayerCache
from xlgen.serving.exceptions import GenerationExhaustedError, TokenizerNotLoadedError
from xlgen.serving.generation.beam import BeamHypotheses
from xlgen.serving.generation.core import GenerateConfig, greedy_next_tokens, process_logits
from xlgen.serving.metrics.core import GenerationMetrics, RequestMetrics

logger: logging.Logger = get_logger(__name__)

_BEAM_INIT_PENALTY = -1e9


@dataclass(frozen=True)
class TokenIds:
    bos: Optional[int]
    eos: Optional[int]
    pad: Optional[int]


@dataclass
class GenerationOutput:
    """
    Token-level result of one call.

    ``sequences`` has ``batch * num_return_sequences`` rows (prompt included,
    left padding removed), grouped by input. ``scores`` holds the
    length-normalised beam score of each row and is None for greedy decoding.
    """

    sequences: list[list[int]] = field(default_factory=list)
    scores: Optional[list[float]] = None
    strategy: str = "greedy"
    steps: int = 0
    cancelled: bool = False
    exhausted: bool = False


@dataclass
class _LoopResult:
    rows: list[torch.Tensor]
    scores: Optional[list[float]] = None
    steps: int = 0
    cancelled: bool = False
    exhausted: bool = False


def _stop_requested(stop_event: Optional[threading.Event]) -> bool:
    return stop_event is not None and stop_event.is_set()


def _leading_padding(attention_mask: torch.Tensor) -> list[int]:
    """Number of left-padding positions per row."""
    return attention_mask.long().cumsum(dim=1).eq(0).sum(dim=1).tolist()


class LanguageGenerator:
    """
    Deterministic text generation over a ``LanguageModelBase``.

    Args:
        model: GPT-2 or XLNet LM head model.
        tokenizer: Anything with ``encode(text, max_len, truncation_strategy)``
            and ``decode(ids, skip_special_tokens, clean_up_tokenization_spaces)``.
            Only needed for the text-level ``generate``.
        device: Where inputs are placed; defaults to the model's device.
        config: Defaults for calls that don't pass their own config.
    """

    def __init__(
        self,
        model: LanguageModelBase,
        tokenizer: Optional[object] = None,
        device: Optional[torch.device] = None,
        config: Optional[GenerateConfig] = None,
    ) -> None:
        self._model = model
        self._tokenizer = tokenizer
        if device is None:
            first_param = next(model.parameters(), None)
            device = first_param.device if first_param is not None else torch.device("cpu")
        self._device = device
        self._config = config or GenerateConfig()
        self._metrics = GenerationMetrics()
        self._model.eval()

    @property
    def model(self) -> LanguageModelBase:
        return self._model

    @property
    def metrics(self) -> GenerationMetrics:
        return self._metrics

    def generate(
        self,
        prompts: Optional[Sequence[str]] = None,
        config: Optional[GenerateConfig] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> list[str]:
        """
        Continue each prompt and return the decoded texts.

        Args:
            prompts: Texts to continue. None starts a single sequence from BOS.
            config: Decoding options, defaults to the generator's config.
            stop_event: Set it from another thread to end the call at the
                next step; the sequences produced so far are returned.

        Returns:
            ``len(prompts) * num_return_sequences`` strings, grouped by prompt,
            each including its prompt. Beam results come best first.
        """
        if self._tokenizer is None:
            raise TokenizerNotLoadedError("No tokenizer loaded, can't generate text")

        config = config or self._config
        input_ids, attention_mask = self.encode_prompts(prompts, config)
        output = self.generate_ids(input_ids, attention_mask, config=config, stop_event=stop_event)
        return [
            self._tokenizer.decode(
                sequence,
                skip_special_tokens=True,
                clean_up_tokenization_spaces=True,
            )
            for sequence in output.sequences
        ]

    def encode_prompts(
        self,
        prompts: Optional[Sequence[str]],
        config: Optional[GenerateConfig] = None,
    ) -> tuple[torch.Tensor, torch.Tensor]:
        """
        Tokenize and left-pad prompts.

        Returns:
            ``(input_ids, attention_mask)``, both [batch, longest_prompt].
        """
        if self._tokenizer is None:
            raise TokenizerNotLoadedError("No tokenizer loaded, can't encode prompts")

        config = config or self._config
        token_ids = self._resolve_token_ids(config)
        max_length = self._effective_max_length(config)

        if prompts is None:
            encoded = [[]]
        else:
            if isinstance(prompts, str):
                prompts = [prompts]
            encoded = [
                self._tokenizer.encode(prompt, max_len=max_length, truncation_strategy="longest_first")
                for prompt in prompts
            ]
        if not encoded:
            raise ValueError("generate() needs at least one prompt")

        for idx, ids in enumerate(encoded):
            if not ids:
                if token_ids.bos is None:
                    raise ValueError(f"Prompt {idx} is empty and the model has no BOS token to start from")
                encoded[idx] = [token_ids.bos]

        return self._left_pad(encoded, token_ids.pad)

    def _left_pad(
        self,
        encoded: list[list[int]],
        pad_token_id: Optional[int],
    ) -> tuple[torch.Tensor, torch.Tensor]:
        longest = max(len(ids) for ids in encoded)
        if pad_token_id is None and any(len(ids) != longest for ids in encoded):
            raise ValueError("Prompts of different lengths need a pad token id")
        pad = pad_token_id if pad_token_id is not None else 0

        input_ids = torch.full((len(encoded), longest), pad, dtype=torch.long)
        attention_mask = torch.zeros((len(encoded), longest), dtype=torch.long)
        for row, ids in enumerate(encoded):
            if ids:
                input_ids[row, longest - len(ids):] = torch.tensor(ids, dtype=torch.long)
                attention_mask[row, longest - len(ids):] = 1
        return input_ids.to(self._device), attention_mask.to(self._device)

    def _resolve_token_ids(self, config: GenerateConfig) -> TokenIds:
        bos = config.bos_token_id if config.bos_token_id is not None else self._model.bos_token_id
        eos = config.eos_token_id if config.eos_token_id is not None else self._model.eos_token_id
        pad = config.pad_token_id if config.pad_token_id is not None else self._model.pad_token_id
        if pad is None and eos is not None:
            pad = eos
        return TokenIds(bos=bos, eos=eos, pad=pad)

    def _effective_max_length(self, config: GenerateConfig) -> int:
        limit = self._model.max_positions
        if limit is not None and config.max_length > limit:
            logger.warning(
                "max_length exceeds the model's context window, clamping",
                extra={"max_length": config.max_length, "max_positions": limit},
            )
            return limit
        return config.max_length

    @torch.no_grad()
    def generate_ids(
        self,
        input_ids: torch.Tensor,
        attention_mask: Optional[torch.Tensor] = None,
        config: Optional[GenerateConfig] = None,
        stop_event: Optional[threading.Event] = None,
        strategy: Optional[str] = None,
    ) -> GenerationOutput:
        """
        Decode from already tokenized, left-padded prompts.

        ``max_length`` bounds the real tokens of each row, prompt included,
        so a row's result does not depend on how far the rest of the batch
        padded it.

        Args:
            input_ids: [batch, prompt_len] or [prompt_len].
            attention_mask: 0/1 mask, 0 on left padding. All ones if omitted.
            config: Decoding options.
            stop_event: Cooperative cancellation, checked before every step.
            strategy: ``"greedy"`` or ``"beam"``; by default beam search runs
                when ``num_beams > 1``.
        """
        config = config or self._config
        if strategy is None:
            strategy = "beam" if config.use_beam_search else "greedy"
        if strategy not in ("greedy", "beam"):
            raise ValueError(f"Unknown decoding strategy: {strategy}")

        token_ids = self._resolve_token_ids(config)
        max_length = self._effective_max_length(config)

        if input_ids.dim() == 1:
            input_ids = input_ids.unsqueeze(0)
        input_ids = input_ids.to(self._device, dtype=torch.long)
        if attention_mask is None:
            attention_mask = torch.ones_like(input_ids)
        elif attention_mask.dim() == 1:
            attention_mask = attention_mask.unsqueeze(0)
        attention_mask = attention_mask.to(self._device, dtype=torch.long)
        if attention_mask.shape != input_ids.shape:
            raise ValueError(
                f"attention_mask {tuple(attention_mask.shape)} does not match input_ids {tuple(input_ids.shape)}"
            )

        batch_size, prompt_len = input_ids.shape
        padding = _leading_padding(attention_mask)
        start = time.monotonic()
        logger.info(
            "Generation started",
            extra={
                "strategy": strategy,
                "batch_size": batch_size,
                "prompt_len": prompt_len,
                "max_length": max_length,
                "num_beams": config.num_beams,
            },
        )

        # max_length counts real tokens, so each row may run as far as its padding
        limits = [max_length + pad for pad in padding]
        all_full = all(prompt_len >= limit for limit in limits)

        cache = self._model.new_cache(padding=max(padding))
        if all_full:
            logger.info(
                "Prompts already reach max_length, nothing to generate",
                extra={"prompt_len": prompt_len, "max_length": max_length},
            )
            rows = [row for row in input_ids for _ in range(config.num_return_sequences)]
            result = _LoopResult(rows=rows)
        elif strategy == "beam":
            result = self._generate_beam_search(
                input_ids, attention_mask, cache, config, token_ids, limits, padding, stop_event
            )
        else:
            result = self._generate_greedy(
                input_ids, attention_mask, cache, config, token_ids, limits, stop_event
            )

        repeats = config.num_return_sequences if (strategy == "beam" or all_full) else 1
        sequences = [
            row[padding[idx // repeats]:].tolist()
            for idx, row in enumerate(result.rows)
        ]

        elapsed_ms = (time.monotonic() - start) * 1000.0
        generated = sum(max(len(seq) - (prompt_len - padding[idx // repeats]), 0) for idx, seq in enumerate(sequences))
        self._metrics.record(
            RequestMetrics(
                strategy=strategy,
                num_prompts=batch_size,
                prompt_tokens=int(attention_mask.sum().item()),
                generated_tokens=generated,
                steps=result.steps,
                total_time_ms=elapsed_ms,
                tokens_per_second=(generated / elapsed_ms * 1000.0) if elapsed_ms > 0 else 0.0,
                cache_memory_mb=cache.memory_mb(),
                peak_memory_mb=GenerationMetrics.get_gpu_memory_mb(),
                cancelled=result.cancelled,
                exhausted=result.exhausted,
            )
        )

        return GenerationOutput(
            sequences=sequences,
            scores=result.scores,
            strategy=strategy,
            steps=result.steps,
            cancelled=result.cancelled,
            exhausted=result.exhausted,
        )

    def _next_token_logits(
        self,
        input_ids: torch.Tensor,
        attention_mask: torch.Tensor,
        cache: LayerCache,
    ) -> torch.Tensor:
        model_inputs = self._model.prepare_inputs_for_generation(input_ids, cache, attention_mask)
        outputs = self._model(**model_inputs)
        return outputs.logits[:, -1, :]

    def _generate_greedy(
        self,
        input_ids: torch.Tensor,
        attention_mask: torch.Tensor,
        cache: LayerCache,
        config: GenerateConfig,
        token_ids: TokenIds,
        limits: list[int],
        stop_event: Optional[threading.Event],
    ) -> _LoopResult:
        batch_size, cur_len = input_ids.shape
        eos, pad = token_ids.eos, token_ids.pad
        if pad is None:
            pad = 0
        limit = input_ids.new_tensor(limits)
        unfinished = (limit > cur_len).long()
        sent_lengths = limit.clamp(min=cur_len)
        steps = 0
        cancelled = False

        while unfinished.any():
            if _stop_requested(stop_event):
                logger.info("Generation cancelled", extra={"cur_len": cur_len, "steps": steps})
                cancelled = True
                break

            logits = self._next_token_logits(input_ids, attention_mask, cache)
            logits = process_logits(logits, input_ids, config, attention_mask)
            next_tokens = greedy_next_tokens(logits)

            # finished rows only receive padding, hidden from attention
            tokens_to_add = next_tokens * unfinished + pad * (1 - unfinished)
            input_ids = torch.cat([input_ids, tokens_to_add.unsqueeze(-1)], dim=-1)
            attention_mask = torch.cat([attention_mask, unfinished.unsqueeze(-1)], dim=-1)
            steps += 1
            cur_len += 1

            if eos is not None:
                just_finished = unfinished.bool() & (tokens_to_add == eos)
                sent_lengths.masked_fill_(just_finished, cur_len)
                unfinished = unfinished * (~just_finished).long()
            unfinished = unfinished * (limit > cur_len).long()

        rows = [input_ids[idx, : int(sent_lengths[idx])] for idx in range(batch_size)]
        return _LoopResult(rows=rows, steps=steps, cancelled=cancelled)

    def _generate_beam_search(
        self,
        input_ids: torch.Tensor,
        attention_mask: torch.Tensor,
        cache: LayerCache,
        config: GenerateConfig,
        token_ids: TokenIds,
        limits: list[int],
        padding: list[int],
        stop_event: Optional[threading.Event],
    ) -> _LoopResult:
        batch_size, cur_len = input_ids.shape
        num_beams = config.num_beams
        eos, pad = token_ids.eos, token_ids.pad
        if pad is None:
            pad = 0

        # one row per beam, grouped by input
        input_ids = input_ids.repeat_interleave(num_beams, dim=0)
        attention_mask = attention_mask.repeat_interleave(num_beams, dim=0)

        hypotheses = [
            BeamHypotheses(
                num_beams, limits[batch_idx], config.length_penalty, config.early_stopping,
                prefix_len=padding[batch_idx],
            )
            for batch_idx in range(batch_size)
        ]

        # only the first beam of each input is live at the start, so the
        # first step doesn't pick the same token num_beams times
        beam_scores = torch.zeros((batch_size, num_beams), dtype=torch.float, device=input_ids.device)
        beam_scores[:, 1:] = _BEAM_INIT_PENALTY
        beam_scores = beam_scores.view(-1)

        # inputs already at their limit keep the prompt as every hypothesis
        done = [cur_len >= limit for limit in limits]
        for batch_idx, full in enumerate(done):
            if full:
                for _ in range(num_beams):
                    hypotheses[batch_idx].add(input_ids[batch_idx * num_beams], 0.0)

        steps = 0
        cancelled = False
        exhausted = False

        while not all(done):
            if _stop_requested(stop_event):
                logger.info("Generation cancelled", extra={"cur_len": cur_len, "steps": steps})
                cancelled = True
                break

            logits = self._next_token_logits(input_ids, attention_mask, cache)
            logits = process_logits(logits, input_ids, config, attention_mask)
            scores = F.log_softmax(logits.float(), dim=-1)
            vocab_size = scores.size(-1)

            next_scores = scores + beam_scores[:, None].expand_as(scores)
            next_scores = next_scores.view(batch_size, num_beams * vocab_size)
            next_scores, next_tokens = torch.topk(
                next_scores, min(2 * num_beams, num_beams * vocab_size), dim=1, largest=True, sorted=True
            )

            try:
                next_batch_beam = self._select_beams(
                    input_ids, next_scores, next_tokens, hypotheses, done, vocab_size, eos, pad, cur_len
                )
            except GenerationExhaustedError as err:
                logger.warning(
                    "Beam search exhausted, returning partial sequences",
                    extra={"batch_idx": err.batch_idx, "found": err.found, "needed": err.needed, "cur_len": cur_len},
                )
                exhausted = True
                break

            if all(done):
                break

            beam_scores = torch.tensor([x[0] for x in next_batch_beam], dtype=beam_scores.dtype, device=input_ids.device)
            beam_tokens = torch.tensor([x[1] for x in next_batch_beam], dtype=torch.long, device=input_ids.device)
            beam_idx = torch.tensor([x[2] for x in next_batch_beam], dtype=torch.long, device=input_ids.device)
            # rows of finished inputs only carry padding from here on
            live = torch.tensor(
                [0 if done[batch_idx] else 1 for batch_idx in range(batch_size) for _ in range(num_beams)],
                dtype=attention_mask.dtype,
                device=attention_mask.device,
            )

            input_ids = torch.cat([input_ids[beam_idx, :], beam_tokens.unsqueeze(1)], dim=-1)
            attention_mask = torch.cat([attention_mask[beam_idx, :], live.unsqueeze(1)], dim=-1)
            cache.reorder(beam_idx)

            cur_len += 1
            steps += 1

            for batch_idx in range(batch_size):
                if not done[batch_idx] and cur_len >= limits[batch_idx]:
                    self._close_beams(input_ids, beam_scores, hypotheses[batch_idx], batch_idx)
                    done[batch_idx] = True

        # beams still open at the end compete with the finished ones
        for batch_idx in range(batch_size):
            if not done[batch_idx]:
                self._close_beams(input_ids, beam_scores, hypotheses[batch_idx], batch_idx)

        rows: list[torch.Tensor] = []
        row_scores: list[float] = []
        for batch_idx, hyps in enumerate(hypotheses):
            for hyp in hyps.best(config.num_return_sequences):
                tokens = hyp.tokens
                if hyp.ended_with_eos and eos is not None and len(tokens) < limits[batch_idx]:
                    tokens = torch.cat([tokens, tokens.new_tensor([eos])])
                rows.append(tokens)
                row_scores.append(hyp.score)

        return _LoopResult(rows=rows, scores=row_scores, steps=steps, cancelled=cancelled, exhausted=exhausted)

    @staticmethod
    def _close_beams(
        input_ids: torch.Tensor,
        beam_scores: torch.Tensor,
        hyps: BeamHypotheses,
        batch_idx: int,
    ) -> None:
        for beam_id in range(hyps.num_beams):
            effective_beam_id = batch_idx * hyps.num_beams + beam_id
            hyps.add(input_ids[effective_beam_id], beam_scores[effective_beam_id].item())

    @staticmethod
    def _select_beams(
        input_ids: torch.Tensor,
        next_scores: torch.Tensor,
        next_tokens: torch.Tensor,
        hypotheses: list[BeamHypotheses],
        done: list[bool],
        vocab_size: int,
        eos: Optional[int],
        pad: int,
        cur_len: int,
    ) -> list[tuple[float, int, int]]:
        """
        Pick the next ``num_beams`` live beams of every input.

        Candidates are visited best first. An EOS candidate ranked inside
        the top ``num_beams`` closes its beam into the hypotheses; any other
        finite candidate becomes a live beam.

        Returns:
            ``(score, token, source_row)`` per row of the next step.

        Raises:
            GenerationExhaustedError: Fewer than ``num_beams`` finite
                candidates for an input that isn't done.
        """
        num_beams = hypotheses[0].num_beams
        next_batch_beam: list[tuple[float, int, int]] = []

        for batch_idx, hyps in enumerate(hypotheses):
            if done[batch_idx]:
                next_batch_beam.extend([(0.0, pad, batch_idx * num_beams)] * num_beams)
                continue

            next_sent_beam: list[tuple[float, int, int]] = []
            candidates = zip(next_tokens[batch_idx].tolist(), next_scores[batch_idx].tolist())
            for rank, (candidate, score) in enumerate(candidates):
                if not math.isfinite(score):
                    continue
                beam_id, token_id = divmod(candidate, vocab_size)
                effective_beam_id = batch_idx * num_beams + beam_id

                if eos is not None and token_id == eos:
                    if rank >= num_beams:
                        continue
                    hyps.add(input_ids[effective_beam_id].clone(), score, ended_with_eos=True)
                else:
                    next_sent_beam.append((score, token_id, effective_beam_id))

                if len(next_sent_beam) == num_beams:
                    break

            done[batch_idx] = done[batch_idx] or hyps.is_done(next_scores[batch_idx].max().item(), cur_len)

            if len(next_sent_beam) < num_beams:
                if not done[batch_idx]:
                    raise GenerationExhaustedError(batch_idx, len(next_sent_beam), num_beams)
                next_sent_beam.extend([(0.0, pad, batch_idx * num_beams)] * (num_beams - len(next_sent_beam)))

            next_batch_beam.extend(next_sent_beam)

        return next_batch_beam
