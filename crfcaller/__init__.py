"""crfcaller: CRF-LSTM nanopore basecalling and alignment pipeline."""

__version__ = "0.3.0"
