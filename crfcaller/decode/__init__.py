from crfcaller.decode.viterbi import ALPHABET, CRFDecoder

__all__ = ['ALPHABET', 'CRFDecoder']
