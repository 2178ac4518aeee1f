"""
SAM/BAM/CRAM and FASTA/FASTQ input and SAM/BAM output via pysam.

Every input record is handed on as a ``pysam.AlignedSegment``; FASTA/FASTQ entries
are converted to unmapped records.
"""

import logging
import os

import pysam

from crfcaller import __version__
from crfcaller.errors import ConfigError, RecordError
from crfcaller.utils.aligner import FLAG_UNMAPPED, is_fastx

logger = logging.getLogger(__name__)

UNALIGNED_HEADER = {'HD': {'VN': '1.6', 'SO': 'unknown'}}

# a truncated BAM keeps failing at the same offset
MAX_CONSECUTIVE_FAILURES = 16


def unaligned_header(program=None):
    header = dict(UNALIGNED_HEADER)
    if program is not None:
        header['PG'] = [{'ID': program, 'PN': 'crfcaller', 'VN': __version__}]
    return pysam.AlignmentHeader.from_dict(header)


class HtsReader:
    """
    Args:
        path: input file, or ``-`` for SAM/BAM on stdin.
    """

    def __init__(self, path, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.path = os.fspath(path)
        self.num_skipped = 0
        self.num_read = 0
        try:
            self._open()
        except (OSError, ValueError) as e:
            raise ConfigError(f"cannot open {self.path}: {e}") from e
        self.is_aligned = bool(self.header.references)
        self.logger.debug("opened %s (%s, aligned=%s)", self.path, self.format, self.is_aligned)

    def _open(self):
        if self.path != '-' and is_fastx(self.path):
            self.format = 'fastx'
            self._file = pysam.FastxFile(self.path)
            self.header = unaligned_header()
        else:
            self._file = pysam.AlignmentFile(self.path, 'r', check_sq=False)
            if self._file.is_cram:
                self.format = 'cram'
            elif self._file.is_bam:
                self.format = 'bam'
            else:
                self.format = 'sam'
            self.header = self._file.header

    def _from_fastx(self, entry):
        if not entry.sequence:
            raise RecordError(f"read {entry.name} has no sequence")
        record = pysam.AlignedSegment(self.header)
        record.query_name = entry.name
        record.flag = FLAG_UNMAPPED
        record.query_sequence = entry.sequence
        if entry.quality:
            if len(entry.quality) != len(entry.sequence):
                raise RecordError(f"read {entry.name} has {len(entry.quality)} qualities for {len(entry.sequence)} bases")
            record.query_qualities = pysam.qualitystring_to_array(entry.quality)
        return record

    def __iter__(self):
        if self.format == 'fastx':
            for entry in self._file:
                try:
                    yield self._from_fastx(entry)
                except RecordError as e:
                    self.num_skipped += 1
                    self.logger.warning("skipping record: %s", e)
        else:
            # fetch() rather than plain iteration: unaligned SAM has no @SQ lines
            records = self._file.fetch(until_eof=True)
            failures = 0
            while True:
                try:
                    record = next(records)
                except StopIteration:
                    break
                except (OSError, ValueError) as e:
                    self.num_skipped += 1
                    failures += 1
                    self.logger.warning("skipping record: %s", e)
                    if failures >= MAX_CONSECUTIVE_FAILURES:
                        self.logger.error("giving up on %s after %d unreadable records in a row", self.path, failures)
                        break
                    continue
                failures = 0
                yield record

    def read(self, sink, max_reads=-1):
        """
        Push records into ``sink`` (anything with ``push_message``).

        Args:
            max_reads: stop after this many records; <= 0 reads everything.

        Returns:
            number of records pushed.
        """
        for record in self:
            if 0 < max_reads <= self.num_read:
                break
            sink.push_message(record)
            self.num_read += 1
        if self.num_skipped:
            self.logger.warning("skipped %d corrupt records in %s", self.num_skipped, self.path)
        return self.num_read

    def close(self):
        self._file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class HtsWriter:
    """
    Writes records to ``path``: BAM for ``.bam`` paths, SAM otherwise (``-`` is stdout).
    """

    def __init__(self, path, header, logger=None):
        self.logger = logger or logging.getLogger(__name__)
        self.path = os.fspath(path)
        mode = 'wb' if self.path.endswith('.bam') else 'w'
        self._file = pysam.AlignmentFile(self.path, mode, header=header)
        self.header = self._file.header
        self.total = 0

    def write(self, record):
        self._file.write(record)
        self.total += 1

    def close(self):
        self._file.close()
        self.logger.debug("wrote %d records to %s", self.total, self.path)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
