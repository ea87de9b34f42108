"""
modules/encoders/text_encoder.py

Turns raw text into fixed-dimension, L2-normalized embeddings.

Pipeline per batch:
    1. Normalize (NFKC + case-fold) and split into basic tokens
    2. WordPiece: greedy longest-match-first subwords, "##" continuation prefix,
       whole word -> [UNK] when it cannot be covered by the vocabulary
    3. Frame as [CLS] ... [SEP], truncate/pad to max_len with [PAD],
       build attention_mask and token_type_ids
    4. Forward pass through the encoder backend (lazy-loaded on first use)
    5. Attention-mask-weighted mean pooling over token states
       (or a pre-pooled 2D output when the model only exposes that)
    6. L2 normalization (zero norm treated as 1)

The backend is any callable taking (input_ids, attention_mask, token_type_ids)
int64 arrays and returning a mapping of output name -> array. The default
backend runs a local transformers checkpoint through torch.
"""

import re
import threading
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional

import numpy as np
from loguru import logger

from config.settings import TEXT_MAX_LEN, TEXT_MODEL_NAME, TEXT_MODEL_PATH, TEXT_VOCAB_PATH
from core.errors import EncoderConfigError, UnrecognizedModelOutputError

CLS_TOKEN = "[CLS]"
SEP_TOKEN = "[SEP]"
PAD_TOKEN = "[PAD]"
UNK_TOKEN = "[UNK]"
REQUIRED_TOKENS = (CLS_TOKEN, SEP_TOKEN, PAD_TOKEN, UNK_TOKEN)

MAX_CHARS_PER_WORD = 100
POOLED_OUTPUT_NAMES = ("pooled_output", "pooler_output", "sentence_embedding")

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9\s.,\-_]")
_PUNCT_SPLIT = re.compile(r"([.,\-_])")

TextBackend = Callable[[np.ndarray, np.ndarray, np.ndarray], Mapping[str, np.ndarray]]


# ── Tokenization ───────────────────────────────────────────────────────────

@dataclass
class EncodedBatch:
    input_ids: np.ndarray        # (B, T) int64
    attention_mask: np.ndarray   # (B, T) int64
    token_type_ids: np.ndarray   # (B, T) int64


def load_vocab(vocab_path: Path) -> Dict[str, int]:
    """
    Read a one-token-per-line vocabulary file.

    Raises:
        EncoderConfigError: file missing or a required special token absent.
    """
    vocab_path = Path(vocab_path)
    if not vocab_path.exists():
        raise EncoderConfigError(f"Vocabulary file not found: {vocab_path}")

    vocab: Dict[str, int] = {}
    with open(vocab_path, "r", encoding="utf-8") as f:
        for line in f:
            token = line.rstrip("\n").rstrip("\r")
            if token and token not in vocab:
                vocab[token] = len(vocab)

    missing = [t for t in REQUIRED_TOKENS if t not in vocab]
    if missing:
        raise EncoderConfigError(
            f"Vocabulary {vocab_path} is missing special tokens: {', '.join(missing)}"
        )
    return vocab


class WordPieceTokenizer:
    """BERT-style uncased WordPiece tokenizer with fixed-length framing."""

    def __init__(self, vocab_path: Path = TEXT_VOCAB_PATH, max_len: int = TEXT_MAX_LEN):
        if max_len < 2:
            raise EncoderConfigError(f"max_len must be at least 2, got {max_len}")
        self.vocab = load_vocab(vocab_path)
        self.max_len = max_len
        self.cls_id = self.vocab[CLS_TOKEN]
        self.sep_id = self.vocab[SEP_TOKEN]
        self.pad_id = self.vocab[PAD_TOKEN]
        self.unk_id = self.vocab[UNK_TOKEN]
        logger.debug(f"WordPiece vocab loaded: {len(self.vocab)} tokens, max_len={max_len}")

    def basic_tokenize(self, text: str) -> List[str]:
        text = unicodedata.normalize("NFKC", text).casefold()
        text = _DISALLOWED_CHARS.sub(" ", text)
        words = []
        for word in text.split():
            words.extend(p for p in _PUNCT_SPLIT.split(word) if p)
        return words

    def wordpiece(self, word: str) -> List[str]:
        """
        Greedy longest-match-first split of one word.
        Returns [UNK] if any remainder of the word has no vocabulary match.
        """
        if len(word) > MAX_CHARS_PER_WORD:
            return [UNK_TOKEN]

        pieces = []
        start = 0
        while start < len(word):
            end = len(word)
            match = None
            while start < end:
                piece = word[start:end]
                if start > 0:
                    piece = "##" + piece
                if piece in self.vocab:
                    match = piece
                    break
                end -= 1
            if match is None:
                return [UNK_TOKEN]
            pieces.append(match)
            start = end
        return pieces

    def tokenize(self, text: str) -> List[str]:
        tokens = []
        for word in self.basic_tokenize(text):
            tokens.extend(self.wordpiece(word))
        return tokens

    def encode(self, text: str) -> List[int]:
        """Token ids framed as [CLS] ... [SEP] and padded to max_len."""
        ids = [self.vocab.get(t, self.unk_id) for t in self.tokenize(text)]
        ids = [self.cls_id] + ids[: self.max_len - 2] + [self.sep_id]
        ids += [self.pad_id] * (self.max_len - len(ids))
        return ids

    def encode_batch(self, texts: List[str]) -> EncodedBatch:
        input_ids = np.array([self.encode(t) for t in texts], dtype=np.int64)
        attention_mask = (input_ids != self.pad_id).astype(np.int64)
        token_type_ids = np.zeros_like(input_ids)
        return EncodedBatch(input_ids, attention_mask, token_type_ids)


# ── Pooling / normalization ────────────────────────────────────────────────

def l2_normalize(vectors: np.ndarray) -> np.ndarray:
    """Row-wise L2 normalization; rows with zero norm are left as zeros."""
    vectors = np.asarray(vectors, dtype=np.float32)
    norms = np.linalg.norm(vectors, axis=-1, keepdims=True)
    norms[norms == 0] = 1.0
    return vectors / norms


def mean_pool(hidden: np.ndarray, attention_mask: np.ndarray) -> np.ndarray:
    """
    Attention-mask-weighted mean over the token axis.

    Args:
        hidden: (B, T, D) token states
        attention_mask: (B, T) with 1 for real tokens

    Returns:
        (B, D) pooled vectors
    """
    hidden = np.asarray(hidden, dtype=np.float32)
    mask = np.asarray(attention_mask, dtype=np.float32)[:, :, None]
    summed = (hidden * mask).sum(axis=1)
    counts = mask.sum(axis=1)
    counts[counts == 0] = 1.0
    return summed / counts


def pool_outputs(outputs: Mapping[str, np.ndarray], attention_mask: np.ndarray) -> np.ndarray:
    hidden = outputs.get("last_hidden_state")
    if hidden is not None and np.ndim(hidden) == 3:
        return mean_pool(hidden, attention_mask)

    for name in POOLED_OUTPUT_NAMES:
        pooled = outputs.get(name)
        if pooled is not None and np.ndim(pooled) == 2:
            return np.asarray(pooled, dtype=np.float32)

    shapes = {name: np.shape(value) for name, value in outputs.items()}
    raise UnrecognizedModelOutputError(f"unrecognized model output: {shapes}")


# ── Backends ───────────────────────────────────────────────────────────────

class TransformerTextBackend:
    """Runs a local transformers encoder checkpoint on CPU or CUDA."""

    def __init__(self, model_path: Path = TEXT_MODEL_PATH):
        model_path = Path(model_path)
        if not model_path.exists():
            raise EncoderConfigError(f"Text model not found: {model_path}")

        try:
            import torch
            from transformers import AutoModel
        except ImportError as e:
            raise EncoderConfigError(f"torch/transformers unavailable: {e}") from e

        self._torch = torch
        self.device = "cuda" if torch.cuda.is_available() else "cpu"
        logger.info(f"Loading text encoder from {model_path} on {self.device}...")
        self._model = AutoModel.from_pretrained(str(model_path)).to(self.device)
        self._model.eval()
        logger.success(f"Text encoder loaded on {self.device}")

    def __call__(self, input_ids, attention_mask, token_type_ids) -> Dict[str, np.ndarray]:
        torch = self._torch
        with torch.no_grad():
            out = self._model(
                input_ids=torch.from_numpy(input_ids).to(self.device),
                attention_mask=torch.from_numpy(attention_mask).to(self.device),
                token_type_ids=torch.from_numpy(token_type_ids).to(self.device),
            )

        result = {}
        for name in ("last_hidden_state", "pooler_output"):
            value = getattr(out, name, None)
            if value is not None:
                result[name] = value.detach().cpu().numpy()
        return result


# ── Public class ───────────────────────────────────────────────────────────

class TextEncoder:
    """
    Batch text embedder.

    Usage:
        encoder = TextEncoder()
        vectors = encoder.embed(["first passage", "second passage"])
    """

    def __init__(
        self,
        vocab_path: Path = TEXT_VOCAB_PATH,
        model_path: Path = TEXT_MODEL_PATH,
        max_len: int = TEXT_MAX_LEN,
        backend: Optional[TextBackend] = None,
        model_name: str = TEXT_MODEL_NAME,
    ):
        # Vocabulary problems are fatal here, before any model is loaded
        self.tokenizer = WordPieceTokenizer(vocab_path, max_len)
        self.model_path = Path(model_path)
        self.model_name = model_name
        self._backend = backend
        self._load_lock = threading.Lock()

    def _get_backend(self) -> TextBackend:
        if self._backend is None:
            with self._load_lock:
                if self._backend is None:
                    self._backend = TransformerTextBackend(self.model_path)
        return self._backend

    def embed(self, texts: List[str]) -> List[np.ndarray]:
        """
        Embed a batch of texts.

        Returns:
            One float32 vector per input, L2-normalized. Empty input returns []
            without touching the model.
        """
        if not texts:
            return []

        batch = self.tokenizer.encode_batch(texts)
        outputs = self._get_backend()(batch.input_ids, batch.attention_mask, batch.token_type_ids)
        pooled = pool_outputs(outputs, batch.attention_mask)
        if pooled.shape[0] != len(texts):
            raise UnrecognizedModelOutputError(
                f"unrecognized model output: batch of {len(texts)} produced {pooled.shape[0]} rows"
            )
        vectors = l2_normalize(pooled)
        logger.debug(f"Embedded {len(texts)} texts -> dim {vectors.shape[1]}")
        return list(vectors)

    def embed_one(self, text: str) -> np.ndarray:
        return self.embed([text])[0]
