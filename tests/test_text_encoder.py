"""
tests/test_text_encoder.py
Test suite for the WordPiece tokenizer and TextEncoder.

Tests cover:
- Vocabulary loading and special-token validation
- Normalization, punctuation splitting, WordPiece subwords, [UNK]
- [CLS]/[SEP] framing, truncation and padding
- Mask-weighted mean pooling, pooled-output fallback, unknown outputs
- L2 normalization and lazy backend loading

Run with:
    pytest tests/test_text_encoder.py -v
"""

import numpy as np
import pytest

from core.errors import EncoderConfigError, UnrecognizedModelOutputError
from modules.encoders.text_encoder import (
    TextEncoder,
    WordPieceTokenizer,
    l2_normalize,
    load_vocab,
    mean_pool,
    pool_outputs,
)


@pytest.fixture
def tokenizer(vocab_file):
    return WordPieceTokenizer(vocab_file, max_len=12)


# ═══════════════════════════════════════════════════════════════════════════
# VOCABULARY
# ═══════════════════════════════════════════════════════════════════════════

class TestVocabulary:

    def test_missing_vocab_file(self, tmp_path):
        with pytest.raises(EncoderConfigError):
            load_vocab(tmp_path / "nope.txt")

    def test_missing_special_token(self, tmp_path):
        path = tmp_path / "vocab.txt"
        path.write_text("[PAD]\n[UNK]\n[CLS]\nhello\n", encoding="utf-8")
        with pytest.raises(EncoderConfigError, match=r"\[SEP\]"):
            load_vocab(path)

    def test_ids_follow_line_order(self, vocab_file):
        vocab = load_vocab(vocab_file)
        assert vocab["[PAD]"] == 0
        assert vocab["[CLS]"] == 2
        assert vocab["eaas"] > vocab["_"]

    def test_encoder_init_fails_on_bad_vocab(self, tmp_path):
        with pytest.raises(EncoderConfigError):
            TextEncoder(vocab_path=tmp_path / "missing.txt")


# ═══════════════════════════════════════════════════════════════════════════
# TOKENIZATION
# ═══════════════════════════════════════════════════════════════════════════

class TestTokenizer:

    def test_case_fold_and_punctuation_split(self, tokenizer):
        assert tokenizer.basic_tokenize("Hello, World-Wide_Web.") == [
            "hello", ",", "world", "-", "wide", "_", "web", ".",
        ]

    def test_disallowed_characters_become_spaces(self, tokenizer):
        assert tokenizer.basic_tokenize("what?is!eaas") == ["what", "is", "eaas"]

    def test_nfkc_and_casefold(self, tokenizer):
        # U+FB01 ligature normalizes to "fi"; ß case-folds to "ss"
        assert tokenizer.basic_tokenize("ﬁle STRAßE") == ["file", "strasse"]

    def test_wordpiece_continuation(self, tokenizer):
        assert tokenizer.wordpiece("events") == ["event", "##s"]
        assert tokenizer.wordpiece("playing") == ["play", "##ing"]
        assert tokenizer.wordpiece("file") == ["fi", "##le"]

    def test_uncoverable_word_is_unk(self, tokenizer):
        assert tokenizer.wordpiece("xyzzy") == ["[UNK]"]
        # Prefix matches but the remainder does not
        assert tokenizer.wordpiece("eventx") == ["[UNK]"]

    def test_tokenize_sentence(self, tokenizer):
        assert tokenizer.tokenize("EAAS is a platform.") == ["eaas", "is", "a", "platform", "."]


# ═══════════════════════════════════════════════════════════════════════════
# FRAMING
# ═══════════════════════════════════════════════════════════════════════════

class TestFraming:

    def test_cls_sep_and_padding(self, tokenizer):
        ids = tokenizer.encode("eaas platform")
        assert len(ids) == 12
        assert ids[0] == tokenizer.cls_id
        assert ids[3] == tokenizer.sep_id
        assert ids[4:] == [tokenizer.pad_id] * 8

    def test_truncation_keeps_sep(self, tokenizer):
        ids = tokenizer.encode(" ".join(["cats"] * 50))
        assert len(ids) == 12
        assert ids[0] == tokenizer.cls_id
        assert ids[-1] == tokenizer.sep_id
        assert tokenizer.pad_id not in ids

    def test_empty_text_is_cls_sep(self, tokenizer):
        ids = tokenizer.encode("")
        assert ids[:2] == [tokenizer.cls_id, tokenizer.sep_id]

    def test_batch_masks(self, tokenizer):
        batch = tokenizer.encode_batch(["eaas", "the hotel booking service"])
        assert batch.input_ids.shape == (2, 12)
        assert batch.input_ids.dtype == np.int64
        assert batch.attention_mask[0].sum() == 3
        assert batch.attention_mask[1].sum() == 6
        assert not batch.token_type_ids.any()

    def test_max_len_too_small(self, vocab_file):
        with pytest.raises(EncoderConfigError):
            WordPieceTokenizer(vocab_file, max_len=1)


# ═══════════════════════════════════════════════════════════════════════════
# POOLING
# ═══════════════════════════════════════════════════════════════════════════

class TestPooling:

    def test_mean_pool_ignores_padding(self):
        hidden = np.array([[[1.0, 0.0], [3.0, 2.0], [100.0, 100.0]]], dtype=np.float32)
        mask = np.array([[1, 1, 0]])
        np.testing.assert_allclose(mean_pool(hidden, mask), [[2.0, 1.0]])

    def test_pooled_output_fallback(self):
        pooled = np.ones((2, 4), dtype=np.float32)
        out = pool_outputs({"pooler_output": pooled}, np.ones((2, 3)))
        np.testing.assert_allclose(out, pooled)

    def test_token_states_preferred_over_pooled(self):
        hidden = np.zeros((1, 2, 3), dtype=np.float32)
        hidden[0, :, 0] = 1.0
        out = pool_outputs(
            {"last_hidden_state": hidden, "sentence_embedding": np.full((1, 3), 9.0)},
            np.ones((1, 2)),
        )
        np.testing.assert_allclose(out, [[1.0, 0.0, 0.0]])

    def test_unrecognized_output(self):
        with pytest.raises(UnrecognizedModelOutputError, match="unrecognized model output"):
            pool_outputs({"logits": np.zeros((1, 2, 3, 4))}, np.ones((1, 2)))

    def test_l2_normalize_zero_row(self):
        out = l2_normalize(np.array([[3.0, 4.0], [0.0, 0.0]]))
        np.testing.assert_allclose(out, [[0.6, 0.8], [0.0, 0.0]])


# ═══════════════════════════════════════════════════════════════════════════
# ENCODER
# ═══════════════════════════════════════════════════════════════════════════

class TestTextEncoder:

    def test_empty_batch_skips_model(self, text_encoder, text_backend):
        assert text_encoder.embed([]) == []
        assert text_backend.calls == 0

    def test_vectors_are_unit_length(self, text_encoder):
        vectors = text_encoder.embed(["EAAS is a platform.", "Cats like fish."])
        assert len(vectors) == 2
        for v in vectors:
            assert v.dtype == np.float32
            assert abs(float(np.linalg.norm(v)) - 1.0) < 1e-5

    def test_deterministic(self, text_encoder):
        a = text_encoder.embed_one("hotel booking service")
        b = text_encoder.embed_one("hotel booking service")
        np.testing.assert_array_equal(a, b)

    def test_similarity_tracks_overlap(self, text_encoder):
        query = text_encoder.embed_one("what is eaas")
        close = text_encoder.embed_one("eaas is a platform")
        far = text_encoder.embed_one("cats like fish")
        assert float(query @ close) > float(query @ far)

    def test_batch_row_mismatch(self, vocab_file):
        def backend(input_ids, attention_mask, token_type_ids):
            return {"pooler_output": np.ones((1, 4), dtype=np.float32)}

        encoder = TextEncoder(vocab_path=vocab_file, backend=backend)
        with pytest.raises(UnrecognizedModelOutputError):
            encoder.embed(["cats", "dogs"])

    def test_backend_loaded_lazily(self, vocab_file, tmp_path):
        encoder = TextEncoder(vocab_path=vocab_file, model_path=tmp_path / "absent")
        # Construction succeeds; the missing model only surfaces on first use
        with pytest.raises(EncoderConfigError, match="Text model not found"):
            encoder.embed(["cats"])
