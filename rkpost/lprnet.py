"""License plate reading for LPRNet recognition models."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from .common import ModelOutputs, OutputTensor


@dataclass
class LPRNetParams:
    """Number of plate positions and the characters the model was trained on.

    The last character is the blank label.
    """

    plate_positions: int = 0
    plate_chars: list[str] = field(default_factory=list)


class LPRNet:
    """Greedy decoder turning LPRNet outputs into plate strings."""

    def __init__(self, params: LPRNetParams) -> None:
        self.params = params

    def read_plates(self, outputs: ModelOutputs) -> list[str]:
        """Read the plate held in each model output."""
        return [self._process_plate(output) for output in outputs.outputs]

    def _process_plate(self, output: OutputTensor) -> str:
        positions = self.params.plate_positions
        chars = self.params.plate_chars
        num_char = len(chars)
        if positions <= 0 or num_char == 0:
            raise ValueError("plate positions and characters must not be empty")
        buf = np.asarray(output.buf_float, dtype=np.float32)
        if buf.size < positions * num_char:
            raise ValueError(
                f"output holds {buf.size} values, expected {positions * num_char}"
            )

        grid = np.trunc(buf[: positions * num_char]).astype(np.int64)
        labels = [int(v) for v in grid.reshape(num_char, positions).argmax(axis=0)]

        blank = num_char - 1
        decoded = []
        if labels[0] != blank:
            decoded.append(labels[0])
        previous = labels[0]
        for label in labels:
            if label != blank and label != previous:
                decoded.append(label)
            previous = label

        return "".join(chars[label] for label in decoded)