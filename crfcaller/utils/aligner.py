# [文件名: aligner.py]
# minimap2 (mappy) alignment of pysam records against a reference.

import logging
import os
import threading

import mappy as mp
import pysam

from crfcaller import __version__
from crfcaller.errors import IndexLoadError, RecordError
from crfcaller.utils.sequence import reverse_complement

logger = logging.getLogger(__name__)

FLAG_REVERSE = 0x10
FLAG_UNMAPPED = 0x4
FLAG_SECONDARY = 0x100
FLAG_SUPPLEMENTARY = 0x800

# cigar op codes (mappy uses the BAM numbering)
CIGAR_INS = 1
CIGAR_DEL = 2
CIGAR_SOFT_CLIP = 4
CIGAR_HARD_CLIP = 5

# minimap2 default scoring: match, mismatch, gap open/extend, long gap open/extend
SCORING = (2, 4, 4, 2, 24, 1)

FASTX_SUFFIXES = ('.fa', '.fasta', '.fna', '.fq', '.fastq')


def reference_records(path):
    """[(name, length)] of the sequences in a FASTA/FASTQ reference."""
    with pysam.FastxFile(path) as fh:
        return [(entry.name, len(entry.sequence)) for entry in fh]


def is_fastx(path):
    name = os.fspath(path).lower()
    if name.endswith('.gz'):
        name = name[:-3]
    return name.endswith(FASTX_SUFFIXES)


def gap_penalty(length, scoring=SCORING):
    _, _, q, e, q2, e2 = scoring
    return min(q + length * e, q2 + length * e2)


def alignment_stats(hit, scoring=SCORING):
    """(mismatches, gap opens, gap bases, dp score) recomputed from the cigar and NM."""
    a, b = scoring[0], scoring[1]
    gap_opens = gap_bases = penalty = 0
    for length, op in hit.cigar:
        if op in (CIGAR_INS, CIGAR_DEL):
            gap_opens += 1
            gap_bases += length
            penalty += gap_penalty(length, scoring)
    mismatches = max(hit.NM - gap_bases, 0)
    score = a * hit.mlen - b * mismatches - penalty
    return mismatches, gap_opens, gap_bases, score


class Aligner:
    """
    Args:
        reference: FASTA/FASTQ reference or a prebuilt ``.mmi`` index.
        threads: threads used to build the index.
        kmer_size, window_size: minimizer k and w (ignored for ``.mmi`` input).
        index_batch_size: the reference must fit into a single index part of this
            many bases.

    Raises:
        IndexLoadError: reference missing, unreadable, or needing more than one index part.
    """

    def __init__(self, reference, threads=1, kmer_size=15, window_size=15,
                 index_batch_size=16_000_000_000, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.reference = os.fspath(reference)
        self.kmer_size = kmer_size
        self.window_size = window_size
        if not os.path.isfile(self.reference):
            raise IndexLoadError(f"reference {self.reference} does not exist")

        records = None
        if is_fastx(self.reference):
            try:
                records = reference_records(self.reference)
            except (OSError, ValueError) as e:
                raise IndexLoadError(f"cannot read reference {self.reference}: {e}") from e
            total = sum(length for _, length in records)
            if total > index_batch_size:
                raise IndexLoadError(
                    f"reference {self.reference} has {total} bases and would be split into more "
                    f"than one index part (batch size {index_batch_size}); split indexes are not supported"
                )

        self.logger.debug("building index for %s (k=%d, w=%d)", self.reference, kmer_size, window_size)
        self._aligner = mp.Aligner(self.reference, k=kmer_size, w=window_size,
                                   n_threads=max(1, threads))
        if not self._aligner:
            raise IndexLoadError(f"failed to load or build index for {self.reference}")

        if records is None:
            records = [(name, len(self._aligner.seq(name))) for name in self._aligner.seq_names]
        self._records = records
        self._tids = {name: tid for tid, (name, _) in enumerate(self._records)}
        self.header = self.make_header()
        self._local = threading.local()

    def get_idx_records(self):
        return list(self._records)

    def make_header(self, input_header=None):
        """
        SAM header for aligned output: the input header with its @SQ lines replaced by
        the index sequences, plus a @PG line for this aligner.
        """
        header = input_header.to_dict() if input_header is not None else {}
        header = {key: value for key, value in header.items() if key != 'SQ'}
        header.setdefault('HD', {'VN': '1.6', 'SO': 'unknown'})
        header['SQ'] = [{'SN': name, 'LN': length} for name, length in self._records]
        pg = {'ID': 'aligner', 'PN': 'crfcaller', 'VN': __version__,
              'CL': f'crfcaller aligner -k {self.kmer_size} -w {self.window_size} {self.reference}'}
        programs = [p for p in header.get('PG', []) if p.get('ID') != 'aligner']
        header['PG'] = programs + [pg]
        return pysam.AlignmentHeader.from_dict(header)

    def _buffer(self):
        # one mappy thread buffer per worker thread
        buf = getattr(self._local, 'buf', None)
        if buf is None:
            buf = self._local.buf = mp.ThreadBuffer()
        return buf

    def map(self, seq):
        return list(self._aligner.map(seq, buf=self._buffer()))

    def align(self, record):
        """
        Align one pysam record.

        Returns:
            list of new pysam records: the primary alignment first (with SEQ/QUAL),
            then supplementary and secondary ones (without). An unmapped copy of the
            input if nothing aligns.
        """
        seq = record.query_sequence
        if not seq:
            raise RecordError(f"read {record.query_name} has no sequence")
        qual = record.query_qualities
        hits = self.map(seq)
        if not hits:
            return [self._unmapped(record, seq, qual)]

        records = []
        seen_primary = False
        for hit in hits:
            if hit.is_primary and not seen_primary:
                flag = 0
                seen_primary = True
            elif hit.is_primary:
                flag = FLAG_SUPPLEMENTARY
            else:
                flag = FLAG_SECONDARY
            records.append(self._aligned(record, hit, flag, seq, qual))
        return records

    def _copy_tags(self, source, target):
        # array tags (mv, ML) take their typecode from the array itself
        target.set_tags([(tag, value) if value_type == 'B' else (tag, value, value_type)
                         for tag, value, value_type in source.get_tags(with_value_type=True)])

    def _unmapped(self, record, seq, qual):
        out = pysam.AlignedSegment(self.header)
        out.query_name = record.query_name
        out.flag = FLAG_UNMAPPED
        out.query_sequence = seq
        out.query_qualities = qual
        self._copy_tags(record, out)
        return out

    def _aligned(self, record, hit, flag, seq, qual):
        reverse = hit.strand < 0
        if reverse:
            flag |= FLAG_REVERSE
        q_len = len(seq)
        if reverse:
            left_clip, right_clip = q_len - hit.q_en, hit.q_st
        else:
            left_clip, right_clip = hit.q_st, q_len - hit.q_en

        # only the primary record carries SEQ/QUAL, the others are hard clipped
        primary = not (flag & (FLAG_SECONDARY | FLAG_SUPPLEMENTARY))
        clip_op = CIGAR_SOFT_CLIP if primary else CIGAR_HARD_CLIP
        cigar = [(op, length) for length, op in hit.cigar]
        if left_clip:
            cigar.insert(0, (clip_op, left_clip))
        if right_clip:
            cigar.append((clip_op, right_clip))

        out = pysam.AlignedSegment(self.header)
        out.query_name = record.query_name
        out.flag = flag
        out.reference_id = self._tids[hit.ctg]
        out.reference_start = hit.r_st
        out.mapping_quality = hit.mapq
        out.cigartuples = cigar
        if primary:
            out.query_sequence = reverse_complement(seq) if reverse else seq
            if qual is not None:
                out.query_qualities = qual[::-1] if reverse else qual

        self._copy_tags(record, out)
        mismatches, gap_opens, _, score = alignment_stats(hit)
        blen = hit.mlen + mismatches + gap_opens
        divergence = 1.0 - hit.mlen / blen if blen else 0.0
        out.set_tag('NM', hit.NM, 'i')
        out.set_tag('ms', score, 'i')
        out.set_tag('AS', score, 'i')
        out.set_tag('nn', 0, 'i')
        out.set_tag('tp', 'S' if flag & FLAG_SECONDARY else 'P', 'A')
        out.set_tag('de', divergence, 'f')
        out.set_tag('rl', 0, 'i')
        return out
