"""
Command line entry point.

    crfcaller aligner INDEX [READS]         align reads, write SAM/BAM
    crfcaller basecaller MODEL_DIR DATA     basecall POD5 signal, optionally align
"""

import argparse
import logging
import os
import sys

import torch
from tqdm import tqdm

from crfcaller import __version__
from crfcaller.decode import CRFDecoder
from crfcaller.errors import CrfCallerError, DeviceError
from crfcaller.model import load_crf_model
from crfcaller.model.config import BACKENDS
from crfcaller.pipeline.messages import Read
from crfcaller.pipeline.nodes import AlignerNode, BasecallerNode, HtsWriterNode, ReadToBamTypeNode
from crfcaller.pipeline.runner import ModelRunner
from crfcaller.utils.aligner import Aligner
from crfcaller.utils.hts import HtsReader, HtsWriter, unaligned_header
from crfcaller.utils.signal import read_pod5

logger = logging.getLogger("crfcaller")

EXIT_CONFIG_ERROR = 1
EXIT_DEVICE_ERROR = 2


def init_logging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def resolve_threads(threads):
    return threads if threads > 0 else (os.cpu_count() or 1)


def drive(messages, head, stages, total=None, desc="Reads"):
    """Push ``messages`` into ``head``, then shut the pipeline down and report per stage counts."""
    try:
        for message in tqdm(messages, total=total, desc=desc, unit="read", disable=not sys.stderr.isatty()):
            head.push_message(message)
    finally:
        head.terminate()
    for stage in stages:
        if stage.stats:
            logger.debug("> %s: %s", stage.name, dict(stage.stats))
        if stage.stats['skipped'] or stage.stats['failed']:
            logger.warning("> %s: %d skipped, %d failed", stage.name, stage.stats['skipped'], stage.stats['failed'])


def add_aligner_args(parser):
    parser.add_argument("-k", type=int, default=15, help="minimizer k-mer size")
    parser.add_argument("-w", type=int, default=15, help="minimizer window size")
    parser.add_argument("-I", dest="index_batch_size", type=int, default=16_000_000_000,
                        help="bases loaded into a single index part")


def aligner(args, parser):
    threads = resolve_threads(args.threads)
    logger.debug("> threads %d", threads)

    reads = args.reads
    if not reads:
        if sys.stdin.isatty():
            parser.print_help()
            return EXIT_CONFIG_ERROR
        reads = ["-"]
    elif len(reads) > 1:
        logger.error("> multi file input not yet handled")
        return EXIT_CONFIG_ERROR

    logger.info("> loading index %s", args.index)
    index = Aligner(args.index, threads, args.k, args.w, args.index_batch_size)
    logger.info("> loaded index %s", args.index)

    with HtsReader(reads[0]) as reader:
        logger.debug("> input fmt: %s aligned: %s", reader.format, reader.is_aligned)
        header = index.make_header(reader.header)
        with HtsWriter(args.output, header) as writer:
            writer_node = HtsWriterNode(writer)
            aligner_node = AlignerNode(writer_node, index, threads)
            logger.info("> starting alignment")
            records = iter(reader)
            if args.max_reads > 0:
                records = (record for _, record in zip(range(args.max_reads), records))
            drive(records, aligner_node, [aligner_node, writer_node])
            if reader.num_skipped:
                logger.warning("> skipped %d unreadable records", reader.num_skipped)
        logger.info("> finished alignment, %d records written", writer.total)
    return 0


def basecaller(args, parser):
    threads = resolve_threads(args.threads)
    device = args.device
    if device == "auto":
        device = "cuda" if torch.cuda.is_available() else "cpu"

    logger.info("> loading model %s", args.model_dir)
    model, config = load_crf_model(args.model_dir, device=device, backend=args.backend)
    runner = ModelRunner(model, device, args.batchsize, args.chunksize)
    decoder = CRFDecoder(config.state_len)

    index = None
    if args.reference:
        logger.info("> loading index %s", args.reference)
        index = Aligner(args.reference, threads, args.k, args.w, args.index_batch_size)
        header = index.make_header(unaligned_header("basecaller"))
    else:
        header = unaligned_header("basecaller")

    reads = (Read(read_id, signal) for read_id, signal in read_pod5(args.data, recursive=args.recursive))
    if args.max_reads > 0:
        reads = (read for _, read in zip(range(args.max_reads), reads))

    with HtsWriter(args.output, header) as writer:
        writer_node = HtsWriterNode(writer)
        stages = [writer_node]
        downstream = writer_node
        if index is not None:
            downstream = AlignerNode(writer_node, index, threads)
            stages.insert(0, downstream)
        converter = ReadToBamTypeNode(downstream, unaligned_header(), emit_moves=args.emit_moves,
                                      rna=args.rna, num_worker_threads=threads)
        caller = BasecallerNode(converter, runner, decoder, args.chunksize, args.overlap,
                                num_worker_threads=args.runners)
        stages = [caller, converter] + stages
        logger.info("> starting basecalling")
        drive(reads, caller, stages)
        logger.info("> finished basecalling, %d records written", writer.total)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="crfcaller", description="CRF-LSTM nanopore basecaller and aligner.")
    parser.add_argument("--version", action="version", version=__version__)
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("aligner", help="align reads to a reference",
                              formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("index", help="reference in (fastq/fasta/mmi)")
    p.add_argument("reads", nargs="*", help="any HTS format")
    p.add_argument("-t", "--threads", type=int, default=0, help="worker threads, 0 = all cores")
    p.add_argument("-n", "--max-reads", type=int, default=1000, help="stop after this many reads, 0 = all")
    p.add_argument("-o", "--output", default="-", help="output SAM/BAM, - for stdout")
    p.add_argument("-v", "--verbose", action="store_true")
    add_aligner_args(p)
    p.set_defaults(func=aligner, command_parser=p)

    p = subparsers.add_parser("basecaller", help="basecall POD5 reads",
                              formatter_class=argparse.ArgumentDefaultsHelpFormatter)
    p.add_argument("model_dir", help="model directory with config.toml and weight tensors")
    p.add_argument("data", help="POD5 file or directory")
    p.add_argument("--device", default="auto", help="cpu, cuda, cuda:N, mps or auto")
    p.add_argument("--backend", default="auto", choices=BACKENDS, help="LSTM strategy")
    p.add_argument("--batchsize", type=int, default=64)
    p.add_argument("--chunksize", type=int, default=4000)
    p.add_argument("--overlap", type=int, default=400)
    p.add_argument("--runners", type=int, default=1, help="threads running the model")
    p.add_argument("--recursive", action="store_true", help="search DATA for POD5 files recursively")
    p.add_argument("--reference", help="align the basecalls against this reference")
    p.add_argument("--emit-moves", action="store_true", help="write the move table as an mv tag")
    p.add_argument("--rna", action="store_true", help="reads are RNA (reverse the called sequence)")
    p.add_argument("-t", "--threads", type=int, default=0, help="worker threads, 0 = all cores")
    p.add_argument("-n", "--max-reads", type=int, default=0, help="stop after this many reads, 0 = all")
    p.add_argument("-o", "--output", default="-", help="output SAM/BAM, - for stdout")
    p.add_argument("-v", "--verbose", action="store_true")
    add_aligner_args(p)
    p.set_defaults(func=basecaller, command_parser=p)
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    init_logging(args.verbose)
    try:
        return args.func(args, args.command_parser)
    except DeviceError as e:
        logger.error("device error: %s", e)
        return EXIT_DEVICE_ERROR
    except (CrfCallerError, OSError) as e:
        logger.error("%s", e)
        return EXIT_CONFIG_ERROR


if __name__ == "__main__":
    sys.exit(main())
