# [文件名: nodes.py]
# Concrete pipeline stages:
#   Read (signal) -> BasecallerNode -> ReadToBamTypeNode -> [AlignerNode] -> HtsWriterNode

import array
import logging

import numpy as np
import pysam
import torch

from crfcaller.errors import RecordError
from crfcaller.pipeline.sink import MessageSink
from crfcaller.utils.aligner import FLAG_UNMAPPED
from crfcaller.utils.signal import chunk, normalize_signal, stitch

logger = logging.getLogger(__name__)


class BasecallerNode(MessageSink):
    """Signal -> chunks -> model -> stitched scores -> Viterbi sequence, qualities and moves."""

    def __init__(self, sinks, runner, decoder, chunksize, overlap, num_worker_threads=1,
                 max_reads=1000, logger=None):
        super().__init__(max_reads, num_worker_threads, sinks, logger=logger)
        if overlap % runner.stride != 0:
            raise ValueError(f"overlap {overlap} is not a multiple of the model stride {runner.stride}")
        self.runner = runner
        self.decoder = decoder
        self.chunksize = chunksize
        self.overlap = overlap

    def basecall(self, signal):
        signal = torch.from_numpy(normalize_signal(signal))
        chunks = chunk(signal, self.chunksize, self.overlap)
        scores = self.runner.run(chunks)
        scores = stitch(scores, self.chunksize, self.overlap, len(signal), self.runner.stride)
        # stitched scores are (T, C); decode them as a batch of one
        (seq, qstring, moves), = self.decoder.decode(scores[:, None], time_major=True, expanded=self.runner.expanded)
        return seq, qstring, moves

    def process(self, read):
        if read.signal is None:
            raise RecordError(f"read {read.read_id} has no signal")
        read.seq, read.qstring, read.moves = self.basecall(read.signal)
        read.model_stride = self.runner.stride
        read.signal = None
        if not read.seq:
            raise RecordError(f"read {read.read_id} produced no bases")
        return [read]


class ReadToBamTypeNode(MessageSink):
    """Basecalled ``Read`` -> unmapped ``pysam.AlignedSegment``."""

    def __init__(self, sinks, header, emit_moves=False, rna=False, num_worker_threads=1,
                 max_reads=1000, logger=None):
        super().__init__(max_reads, num_worker_threads, sinks, logger=logger)
        self.header = header
        self.emit_moves = emit_moves
        self.rna = rna

    def process(self, read):
        record = pysam.AlignedSegment(self.header)
        record.query_name = read.read_id
        record.flag = FLAG_UNMAPPED
        seq, qstring = read.seq, read.qstring
        if self.rna:
            # RNA reads are sequenced 3' -> 5'
            seq = seq[::-1]
            qstring = qstring[::-1] if qstring else qstring
        record.query_sequence = seq
        if qstring:
            record.query_qualities = pysam.qualitystring_to_array(qstring)
        for tag, value in read.tags.items():
            record.set_tag(tag, value)
        if self.emit_moves and read.moves is not None:
            moves = np.asarray(read.moves, dtype=np.int8)
            record.set_tag('mv', array.array('b', [read.model_stride, *moves.tolist()]))
        return [record]


class AlignerNode(MessageSink):
    def __init__(self, sinks, aligner, num_worker_threads=1, max_reads=1000, logger=None):
        super().__init__(max_reads, num_worker_threads, sinks, logger=logger)
        self.aligner = aligner

    def process(self, record):
        return self.aligner.align(record)


class HtsWriterNode(MessageSink):
    """Terminal stage; a single worker keeps the output in arrival order."""

    def __init__(self, writer, max_reads=1000, logger=None):
        super().__init__(max_reads, 1, (), logger=logger)
        self.writer = writer

    def process(self, record):
        self.writer.write(record)
