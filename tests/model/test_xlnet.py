# Author : Eshan Roy <eshanized@proton.me>
# SPDX-License-Identifier: MIT

"""
Tests for the XLNet language model.

Validates the positional encoding, mask construction, forward shapes and
the memory used during incremental decoding.
"""

import pytest
import torch

from xlgen.model.config import XLNetConfig
from xlgen.model.exceptions import ShapeMismatchError
from xlgen.model.state import LayerState
from xlgen.model.xlnet import GENERATION_OFFSET, XLNetLMHeadModel, relative_positional_encoding


class TestRelativePositionalEncoding:

    def test_bidirectional_rows(self) -> None:
        pos_emb = relative_positional_encoding(3, 5, 16, attn_type="bi")
        assert pos_emb.shape == (8, 1, 16)

    def test_unidirectional_rows(self) -> None:
        pos_emb = relative_positional_encoding(3, 5, 16, attn_type="uni")
        assert pos_emb.shape == (6, 1, 16)

    def test_batch_expansion(self) -> None:
        pos_emb = relative_positional_encoding(2, 2, 16, bsz=3)
        assert pos_emb.shape == (4, 3, 16)

    def test_zero_offset_row(self) -> None:
        """Row ``klen`` encodes distance 0: sin terms 0, cos terms 1."""
        pos_emb = relative_positional_encoding(3, 5, 16, attn_type="bi")
        row = pos_emb[5, 0]
        assert torch.allclose(row[:8], torch.zeros(8))
        assert torch.allclose(row[8:], torch.ones(8))

    def test_clamp_len(self) -> None:
        pos_emb = relative_positional_encoding(4, 8, 16, clamp_len=2)
        # distances 8..3 all clamp to 2
        assert torch.allclose(pos_emb[0], pos_emb[5])

    def test_odd_d_model_raises(self) -> None:
        with pytest.raises(ShapeMismatchError):
            relative_positional_encoding(2, 2, 15)

    def test_unknown_attn_type_raises(self) -> None:
        with pytest.raises(ValueError):
            relative_positional_encoding(2, 2, 16, attn_type="sideways")


class TestMasks:

    def test_create_mask(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        mask = tiny_xlnet.transformer.create_mask(qlen=3, mlen=2)
        assert mask.shape == (3, 5)
        assert mask[:, :2].sum() == 0
        assert mask[:, 2:].tolist() == [[0, 1, 1], [0, 0, 1], [0, 0, 0]]

    def test_create_mask_same_length(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.same_length = True
        model = XLNetLMHeadModel(tiny_xlnet_config)
        mask = model.transformer.create_mask(qlen=3, mlen=0)
        assert mask.tolist() == [[0, 1, 1], [1, 0, 1], [1, 1, 0]]

    def test_non_target_mask_lets_content_see_itself(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        perm_mask = torch.ones(1, 3, 3)
        attn_mask, non_tgt_mask = tiny_xlnet.transformer._build_masks(
            3, 0, 1, None, perm_mask, torch.float, torch.device("cpu")
        )
        assert attn_mask[..., 0, 0].sum() == 9
        assert torch.equal(non_tgt_mask[..., 0, 0], 1.0 - torch.eye(3))

    def test_memory_columns_stay_visible_under_perm_mask(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        perm_mask = torch.zeros(1, 2, 2)
        perm_mask[:, :, -1] = 1.0
        attn_mask, _ = tiny_xlnet.transformer._build_masks(
            2, 3, 1, None, perm_mask, torch.float, torch.device("cpu")
        )
        assert attn_mask.shape == (2, 5, 1, 1)
        assert attn_mask[:, :3].sum() == 0
        assert attn_mask[:, -1].sum() == 2

    def test_padding_mask_covering_memory(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        keep = torch.tensor([[0, 1, 1, 1]])
        attn_mask, _ = tiny_xlnet.transformer._build_masks(
            2, 2, 1, keep, None, torch.float, torch.device("cpu")
        )
        assert attn_mask[0, :, 0, 0].tolist() == [1.0, 0.0, 0.0, 0.0]

    def test_bad_attention_mask_length_raises(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        with pytest.raises(ShapeMismatchError):
            tiny_xlnet(torch.zeros(1, 4, dtype=torch.long), attention_mask=torch.ones(1, 3))

    def test_bad_perm_mask_raises(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        with pytest.raises(ShapeMismatchError):
            tiny_xlnet(torch.zeros(1, 4, dtype=torch.long), perm_mask=torch.zeros(1, 3, 3))

    def test_fully_hidden_query_raises(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.tensor([[4, 5, 6]])
        target_mapping = torch.zeros(1, 1, 3)
        target_mapping[0, 0, -1] = 1.0
        with pytest.raises(ValueError):
            tiny_xlnet(ids, perm_mask=torch.ones(1, 3, 3), target_mapping=target_mapping)

    def test_segment_matrix(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        token_type = torch.tensor([[0, 1]])
        seg_mat = tiny_xlnet.transformer._segment_matrix(token_type, mlen=1, dtype=torch.float)
        assert seg_mat.shape == (2, 3, 1, 2)
        # memory counts as segment 0
        assert seg_mat[:, :, 0, 1].tolist() == [[0, 0, 1], [1, 1, 0]]


class TestXLNetForward:

    def test_logits_shape(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        out = tiny_xlnet(torch.randint(0, 64, (2, 5)))
        assert out.logits.shape == (2, 5, 64)

    def test_target_mapping_selects_predictions(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.randint(3, 64, (2, 5))
        perm_mask = torch.zeros(2, 5, 5)
        perm_mask[:, :, -1] = 1.0
        target_mapping = torch.zeros(2, 1, 5)
        target_mapping[:, 0, -1] = 1.0
        out = tiny_xlnet(ids, perm_mask=perm_mask, target_mapping=target_mapping)
        assert out.logits.shape == (2, 1, 64)

    def test_attentions_when_requested(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.output_attentions = True
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        out = model(torch.randint(0, 64, (1, 4)))
        assert len(out.attentions) == 2
        assert out.attentions[0].shape == (1, 4, 4, 4)

    def test_token_types_change_output(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.tensor([[4, 5, 6, 7]])
        with torch.no_grad():
            same = tiny_xlnet(ids, token_type_ids=torch.zeros(1, 4, dtype=torch.long)).logits
            split = tiny_xlnet(ids, token_type_ids=torch.tensor([[0, 0, 1, 1]])).logits
        assert not torch.allclose(same, split, atol=1e-5)

    def test_lm_loss_is_tied(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        assert tiny_xlnet.lm_loss.weight is tiny_xlnet.transformer.word_embedding.weight
        assert tiny_xlnet.lm_loss.bias is not None

    def test_cache_holds_layer_inputs(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        cache = tiny_xlnet.new_cache()
        ids = torch.tensor([[4, 5, 6]])
        with torch.no_grad():
            tiny_xlnet(ids, cache=cache)
        state = cache.get(0)
        assert isinstance(state, LayerState)
        assert state.prev_content.shape == (3, 1, 32)
        # the first layer's input is the word embedding
        expected = tiny_xlnet.transformer.word_embedding(ids.transpose(0, 1))
        assert torch.allclose(state.prev_content, expected)

    def test_mem_len_bounds_cache(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.mem_len = 2
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        cache = model.new_cache()
        with torch.no_grad():
            model(torch.tensor([[4, 5, 6, 7]]), cache=cache)
        assert cache.current_length == 2

    def test_unidirectional_memory_matches_full_pass(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.attn_type = "uni"
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        ids = torch.tensor([[4, 9, 13, 21, 30]])
        with torch.no_grad():
            full = model(ids).logits
            cache = model.new_cache()
            model(ids[:, :3], cache=cache)
            tail = model(ids[:, 3:], cache=cache).logits
        assert torch.allclose(tail, full[:, 3:], atol=1e-5)


class TestGenerationInputs:

    def test_first_step_appends_dummy(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.tensor([[4, 5, 6, 7]])
        mask = torch.ones(1, 4, dtype=torch.long)
        inputs = tiny_xlnet.prepare_inputs_for_generation(ids, tiny_xlnet.new_cache(), mask)

        assert inputs["input_ids"].tolist() == [[4, 5, 6, 7, 0]]
        assert inputs["perm_mask"].shape == (1, 5, 5)
        assert inputs["perm_mask"][0, :, -1].tolist() == [1.0] * 5
        assert inputs["perm_mask"][0, :, :-1].sum() == 0
        assert inputs["target_mapping"][0, 0].tolist() == [0.0, 0.0, 0.0, 0.0, 1.0]
        assert inputs["attention_mask"].tolist() == [[1, 1, 1, 1, 1]]

    def test_later_steps_refeed_last_positions(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.tensor([[4, 5, 6, 7]])
        cache = tiny_xlnet.new_cache()
        with torch.no_grad():
            logits = tiny_xlnet(**tiny_xlnet.prepare_inputs_for_generation(
                ids, cache, torch.ones(1, 4, dtype=torch.long)
            )).logits
        assert logits.shape == (1, 1, 64)
        assert cache.current_length == 5

        ids = torch.cat([ids, torch.tensor([[8]])], dim=1)
        inputs = tiny_xlnet.prepare_inputs_for_generation(ids, cache, torch.ones(1, 5, dtype=torch.long))
        assert cache.current_length == 5 - GENERATION_OFFSET
        assert inputs["input_ids"].tolist() == [[7, 8, 0]]
        assert inputs["attention_mask"].shape == (1, 6)

        with torch.no_grad():
            tiny_xlnet(**inputs)
        assert cache.current_length == 6

    def test_cached_step_matches_fresh_pass_for_single_layer(self, tiny_xlnet_config: XLNetConfig) -> None:
        """With one layer the memory is plain embeddings, so caching is exact."""
        tiny_xlnet_config.n_layer = 1
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        prompt = torch.tensor([[4, 5, 6, 7]])
        extended = torch.tensor([[4, 5, 6, 7, 8]])

        with torch.no_grad():
            cache = model.new_cache()
            model(**model.prepare_inputs_for_generation(prompt, cache, torch.ones(1, 4, dtype=torch.long)))
            cached = model(**model.prepare_inputs_for_generation(
                extended, cache, torch.ones(1, 5, dtype=torch.long)
            )).logits
            fresh = model(**model.prepare_inputs_for_generation(
                extended, model.new_cache(), torch.ones(1, 5, dtype=torch.long)
            )).logits

        assert torch.allclose(cached, fresh, atol=1e-5)

    def test_step_mask_follows_bounded_memory(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.mem_len = 4
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        ids = torch.tensor([[4, 5, 6, 7]])
        cache = model.new_cache()
        with torch.no_grad():
            model(**model.prepare_inputs_for_generation(ids, cache, torch.ones(1, 4, dtype=torch.long)))
            assert cache.current_length == 4

            for token in (8, 9, 10):
                ids = torch.cat([ids, torch.tensor([[token]])], dim=1)
                inputs = model.prepare_inputs_for_generation(ids, cache, torch.ones_like(ids))
                assert inputs["attention_mask"].shape == (1, 2 + 3)
                logits = model(**inputs).logits
                assert logits.shape == (1, 1, 64)
                assert cache.current_length == 4

    def test_step_mask_keeps_memory_padding(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.mem_len = 4
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        ids = torch.tensor([[2, 2, 5, 6]])
        cache = model.new_cache()
        with torch.no_grad():
            model(**model.prepare_inputs_for_generation(ids, cache, torch.tensor([[0, 0, 1, 1]])))

        ids = torch.cat([ids, torch.tensor([[7]])], dim=1)
        inputs = model.prepare_inputs_for_generation(ids, cache, torch.tensor([[0, 0, 1, 1, 1]]))
        # two memory slots survive: the second pad and the first real token
        assert inputs["attention_mask"].tolist() == [[0, 1, 1, 1, 1]]

    def test_dummy_takes_flag_of_newest_token(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        ids = torch.tensor([[4, 5, 2]])
        inputs = tiny_xlnet.prepare_inputs_for_generation(ids, tiny_xlnet.new_cache(), torch.tensor([[1, 1, 0]]))
        assert inputs["attention_mask"].tolist() == [[1, 1, 0, 0]]

    def test_generation_caches_every_fed_position(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.reuse_len = 2
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        cache = model.new_cache()
        with torch.no_grad():
            model(**model.prepare_inputs_for_generation(
                torch.tensor([[4, 5, 6, 7]]), cache, torch.ones(1, 4, dtype=torch.long)
            ))
        assert cache.current_length == 5

    def test_plain_forward_honours_reuse_len(self, tiny_xlnet_config: XLNetConfig) -> None:
        tiny_xlnet_config.reuse_len = 2
        model = XLNetLMHeadModel(tiny_xlnet_config).eval()
        cache = model.new_cache()
        with torch.no_grad():
            model(torch.tensor([[4, 5, 6, 7]]), cache=cache)
        assert cache.current_length == 2

    def test_pad_token_from_config(self, tiny_xlnet: XLNetLMHeadModel) -> None:
        assert tiny_xlnet.pad_token_id == 2
        assert tiny_xlnet.max_positions is None
