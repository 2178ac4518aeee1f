import numpy as np
import pytest
import torch

from crfcaller.errors import RecordError
from crfcaller.utils.signal import chunk, find_pod5_files, normalize_signal, stitch
from crfcaller.utils.sequence import reverse_complement


class TestNormalize:
    def test_median_mad(self):
        out = normalize_signal(np.array([1, 2, 3, 4, 100], dtype=np.int16))
        assert out.dtype == np.float32
        # median 3, MAD 1
        assert out.tolist() == [-2.0, -1.0, 0.0, 1.0, 97.0]

    def test_flat_signal(self):
        with pytest.raises(RecordError):
            normalize_signal(np.full(100, 7.0))

    def test_empty(self):
        with pytest.raises(RecordError):
            normalize_signal(np.array([]))


class TestChunking:
    @pytest.mark.parametrize("length", [100, 105, 20, 37])
    def test_stitch_inverts_chunk(self, length):
        signal = torch.arange(length, dtype=torch.float32)
        chunks = chunk(signal, 20, 4)
        assert chunks.shape[1:] == (1, 20)
        out = stitch(chunks[:, 0], 20, 4, length, stride=1)
        assert torch.equal(out, signal)

    def test_short_signal_padded(self):
        chunks = chunk(torch.ones(7), 20, 4)
        assert chunks.shape == (1, 1, 20)
        assert chunks[0, 0, 7:].abs().sum() == 0

    def test_stitch_with_stride(self):
        length, stride = 100, 5
        chunks = chunk(torch.arange(length, dtype=torch.float32), 20, 10)
        # model output: one value per stride block, the block's first sample
        scores = chunks[:, 0, ::stride]
        out = stitch(scores, 20, 10, length, stride)
        assert out.tolist() == list(range(0, length, stride))

    def test_single_chunk_trimmed_to_signal(self):
        scores = torch.arange(4).view(1, 4)
        assert stitch(scores, 20, 4, 12, stride=5).tolist() == [0, 1, 2]

    def test_overlap_must_be_smaller(self):
        with pytest.raises(ValueError):
            chunk(torch.ones(100), 20, 20)


class TestPod5Files:
    def test_directory(self, tmp_path):
        (tmp_path / "b.pod5").touch()
        (tmp_path / "a.pod5").touch()
        (tmp_path / "notes.txt").touch()
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "c.pod5").touch()
        assert [p.name for p in find_pod5_files(tmp_path)] == ["a.pod5", "b.pod5"]
        assert len(find_pod5_files(tmp_path, recursive=True)) == 3

    def test_missing(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            find_pod5_files(tmp_path / "nothing")


def test_reverse_complement():
    assert reverse_complement("AACGTN") == "NACGTT"
