"""Text recognition decoding for PP-OCR recognition models."""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from .common import ModelOutputs, OutputTensor


@dataclass
class PPOCRRecogniseParams:
    """Characters the model was trained on and its output sequence length."""

    model_chars: list[str] = field(default_factory=list)
    output_seq_len: int = 0


@dataclass
class PPOCRRecogniseResult:
    """Recognised text with its confidence score."""

    text: str = ""
    score: float = 0.0


class _UnknownCharacterError(Exception):
    """Raised when the model output points past the character list."""


class PPOCRRecognise:
    """Greedy CTC decoder for PP-OCR recognition outputs."""

    def __init__(self, params: PPOCRRecogniseParams) -> None:
        self.params = params

    def recognise(self, outputs: ModelOutputs) -> list[PPOCRRecogniseResult]:
        """Decode the text held in each model output."""
        results = []
        for output in outputs.outputs:
            try:
                results.append(self._recognise_text(output))
            except _UnknownCharacterError:
                results.append(PPOCRRecogniseResult("ERROR ModelChars", 0.0))
        return results

    def _recognise_text(self, output: OutputTensor) -> PPOCRRecogniseResult:
        chars = self.params.model_chars
        num_char = len(chars)
        seq_len = self.params.output_seq_len
        buf = np.asarray(output.buf_float, dtype=np.float32)
        if buf.size < seq_len * num_char:
            raise ValueError(
                f"output holds {buf.size} values, expected {seq_len * num_char}"
            )

        text = []
        score = 0.0
        count = 0
        last_idx = 0
        for n in range(seq_len):
            row = buf[n * num_char : (n + 1) * num_char]
            if row.size:
                idx = int(np.argmax(row))
                val = float(row[idx])
            else:
                idx, val = 0, 0.0
            if idx > 0 and not (n > 0 and idx == last_idx):
                score += val
                count += 1
                if idx >= num_char:
                    raise _UnknownCharacterError(idx)
                text.append(chars[idx])
            last_idx = idx

        score /= count + 1e-6
        if count == 0 or math.isnan(score):
            score = 0.0
        return PPOCRRecogniseResult("".join(text), score)