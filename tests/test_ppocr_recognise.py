import numpy as np
import pytest

from rkpost.common import ModelOutputs, OutputAttributes, OutputTensor
from rkpost.ppocr_recognise import (
    PPOCRRecognise,
    PPOCRRecogniseParams,
    PPOCRRecogniseResult,
)

CHARS = ["blank", "a", "b", "c"]


def make_tensor(rows, num_char=len(CHARS)):
    buf = np.zeros((len(rows), num_char), dtype=np.float32)
    for n, (idx, val) in enumerate(rows):
        buf[n, idx] = val
    return OutputTensor(buf_float=buf)


def wrap(*tensors):
    return ModelOutputs(list(tensors), OutputAttributes(), 0, 0)


def recogniser(seq_len):
    return PPOCRRecognise(PPOCRRecogniseParams(model_chars=CHARS, output_seq_len=seq_len))


def test_decodes_and_collapses_repeats():
    rows = [(1, 0.9), (1, 0.5), (0, 0.9), (2, 0.8), (3, 0.7)]
    [result] = recogniser(5).recognise(wrap(make_tensor(rows)))
    assert result.text == "abc"
    expected = (np.float32(0.9) + np.float32(0.8) + np.float32(0.7)) / 3
    assert result.score == pytest.approx(float(expected), rel=1e-5)


def test_blank_separates_repeated_characters():
    rows = [(1, 0.9), (0, 0.9), (1, 0.9)]
    [result] = recogniser(3).recognise(wrap(make_tensor(rows)))
    assert result.text == "aa"


def test_all_blank_gives_empty_text_and_zero_score():
    rows = [(0, 0.9)] * 4
    [result] = recogniser(4).recognise(wrap(make_tensor(rows)))
    assert result == PPOCRRecogniseResult("", 0.0)


def test_tie_picks_first_index():
    buf = np.full((2, len(CHARS)), 0.5, dtype=np.float32)
    [result] = recogniser(2).recognise(wrap(OutputTensor(buf_float=buf)))
    assert result.text == ""
    assert result.score == 0.0


def test_each_output_decoded_separately():
    first = make_tensor([(2, 0.9), (3, 0.9)])
    second = make_tensor([(3, 0.9), (1, 0.9)])
    results = recogniser(2).recognise(wrap(first, second))
    assert [r.text for r in results] == ["bc", "ca"]


def test_short_buffer_raises():
    with pytest.raises(ValueError):
        recogniser(5).recognise(wrap(make_tensor([(1, 0.9)])))