import numpy as np
import pytest
import torch

from crfcaller.decode import CRFDecoder


def one_hot_scores(columns, n_columns=20):
    """(T, 1, n_columns) scores with a single high column per timestep."""
    scores = torch.zeros(len(columns), 1, n_columns)
    for t, column in enumerate(columns):
        scores[t, 0, column] = 5.0
    return scores


class TestPredecessors:
    def test_state_len_one(self):
        idx = CRFDecoder.predecessors(4, 4)
        assert idx.shape == (4, 5)
        assert idx[:, 0].tolist() == [0, 1, 2, 3]
        # with a single base of history every state can be reached from every state
        assert idx[2, 1:].tolist() == [0, 1, 2, 3]

    def test_state_len_two(self):
        idx = CRFDecoder.predecessors(16, 4)
        # state s = (b1, b2) is reached from (b0, b1) for every b0
        assert idx[6, 1:].tolist() == [1, 5, 9, 13]


class TestDecoder:
    def test_best_path(self):
        decoder = CRFDecoder(state_len=1)
        # A, C, stay, G, T
        scores = one_hot_scores([1, 6, 5, 12, 18])
        (seq, qstring, moves), = decoder.decode(scores)
        assert seq == "ACGT"
        assert len(qstring) == 4
        assert moves.dtype == np.uint8
        assert moves.tolist() == [1, 1, 0, 1, 1]

    def test_unexpanded_batch_major_input(self):
        decoder = CRFDecoder(state_len=1)
        expanded = one_hot_scores([1, 6, 5, 12, 18])
        # drop the blank columns and move the batch first
        keep = [c for c in range(20) if c % 5 != 0]
        scores = expanded[:, :, keep].transpose(0, 1)
        (seq, _, moves), = decoder.decode(scores, time_major=False, expanded=False)
        assert seq == "ACGT"

    def test_batch(self):
        decoder = CRFDecoder(state_len=1)
        scores = torch.cat([one_hot_scores([1, 6, 5, 12, 18]), one_hot_scores([16, 19, 15, 15, 15])], dim=1)
        results = decoder.decode(scores)
        assert [seq for seq, _, _ in results] == ["ACGT", "TT"]
        assert all(len(moves) == 5 for _, _, moves in results)

    def test_wrong_width(self):
        with pytest.raises(ValueError):
            CRFDecoder(state_len=2).decode(torch.zeros(5, 1, 20))

    def test_random_scores_consistent(self):
        decoder = CRFDecoder(state_len=3)
        scores = torch.randn(100, 2, 320)
        for seq, qstring, moves in decoder.decode(scores):
            assert len(seq) == int(moves.sum()) == len(qstring)
            assert set(seq) <= set("ACGT")
            assert all(34 <= ord(c) <= 83 for c in qstring)


class TestPosteriors:
    def test_rows_are_distributions(self):
        decoder = CRFDecoder(state_len=2)
        probs = decoder.base_posteriors(torch.randn(30, 2, 80))
        assert probs.shape == (30, 2, 5)
        assert torch.allclose(probs.sum(dim=-1), torch.ones(30, 2), atol=1e-4)
        assert (probs >= 0).all()

    def test_uniform_scores(self):
        decoder = CRFDecoder(state_len=1)
        probs = decoder.base_posteriors(torch.zeros(6, 1, 20))
        assert torch.allclose(probs, torch.full((6, 1, 5), 0.2), atol=1e-5)

    def test_confident_calls_get_top_quality(self):
        decoder = CRFDecoder(state_len=1)
        scores = one_hot_scores([1, 6, 5, 12, 18]) * 10
        (seq, qstring, _), = decoder.decode(scores)
        assert seq == "ACGT"
        assert qstring == chr(33 + 50) * 4
