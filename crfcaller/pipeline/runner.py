# [文件名: runner.py]
# Runs the CRF model over fixed size batches of signal chunks.

import logging

import torch

from crfcaller.errors import DeviceError, LayoutError

logger = logging.getLogger(__name__)


class ModelRunner:
    """
    Feeds (n, 1, chunksize) chunks to the model ``batch_size`` at a time and
    returns the scores batch-major as float32 on the cpu.

    The last batch is zero padded to ``batch_size`` so the model always sees the
    same shape; the padding rows are dropped from the output.
    """

    def __init__(self, model, device, batch_size, chunksize, dtype=None, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.model = model
        self.device = torch.device(device)
        self.dtype = dtype or next(model.parameters()).dtype
        self.batch_size = batch_size
        self.chunksize = chunksize
        self.stride = model.stride
        self.time_major = model.time_major
        self.expanded = model.expanded
        if chunksize % self.stride != 0:
            raise LayoutError(f"chunksize {chunksize} is not a multiple of the model stride {self.stride}")

    def run(self, chunks):
        if chunks.dim() != 3 or chunks.shape[1] != 1 or chunks.shape[2] != self.chunksize:
            raise LayoutError(f"expected (n, 1, {self.chunksize}) chunks, got shape {tuple(chunks.shape)}")
        outputs = []
        for start in range(0, chunks.shape[0], self.batch_size):
            batch = chunks[start:start + self.batch_size]
            n = batch.shape[0]
            if n < self.batch_size:
                padding = batch.new_zeros((self.batch_size - n, 1, self.chunksize))
                batch = torch.cat([batch, padding])
            scores = self.call(batch)
            if self.time_major:
                scores = scores.transpose(0, 1)
            outputs.append(scores[:n].float().cpu())
        return torch.cat(outputs)

    def call(self, batch):
        try:
            with torch.inference_mode():
                return self.model(batch.to(self.device, self.dtype))
        except RuntimeError as e:
            raise DeviceError(f"model forward failed on {self.device}: {e}") from e
