# [文件名: viterbi.py]
# Viterbi decoding of CRF transition scores into base calls and move tables.

import logging

import numpy as np
import torch

from crfcaller.model.crf import BLANK_SCORE, expand_blanks

logger = logging.getLogger(__name__)

ALPHABET = "NACGT"
QSCORE_MIN = 1
QSCORE_MAX = 50


class CRFDecoder:
    """
    Best-path decoder for the CRF head output.

    The model has ``n_base ** state_len`` states. For every state the scores hold
    ``n_base + 1`` transitions: stay (blank) first, then one move from each of the
    ``n_base`` possible predecessor states. A move into state ``s`` emits base
    ``s % n_base``.
    """

    def __init__(self, state_len, alphabet=ALPHABET, blank_score=BLANK_SCORE):
        self.alphabet = alphabet
        self.n_base = len(alphabet[1:])
        self.state_len = state_len
        self.blank_score = blank_score
        self.n_states = self.n_base ** state_len
        self.idx = self.predecessors(self.n_states, self.n_base)

    @staticmethod
    def predecessors(n_states, n_base):
        """(S, n_base + 1) table of the state each transition comes from; column 0 is the stay."""
        states = torch.arange(n_states)
        moves = torch.arange(n_states * n_base).view(n_base, n_states) // n_base
        return torch.cat([states[:, None], moves.t()], dim=1)

    def prepare(self, scores, time_major=True, expanded=True):
        """
        Bring raw model output into (T, N, S * (n_base + 1)) float32 form.
        """
        if not time_major:
            scores = scores.transpose(0, 1)
        if not expanded:
            scores = expand_blanks(scores, self.blank_score, self.n_base)
        expected = self.n_states * (self.n_base + 1)
        if scores.shape[-1] != expected:
            raise ValueError(f"expected {expected} scores per timestep, got {scores.shape[-1]}")
        return scores.float().contiguous()

    @torch.no_grad()
    def viterbi(self, scores):
        """
        Args:
            scores: (T, N, S * (n_base + 1)) expanded scores.

        Returns:
            (N, T) int64 paths: 0 for a stay, 1..n_base for the emitted base.
        """
        T, N, _ = scores.shape
        S, K = self.n_states, self.n_base + 1
        idx = self.idx.to(scores.device)
        Ms = scores.view(T, N, S, K)

        alpha = scores.new_zeros((N, S))
        traceback = torch.empty((T, N, S), dtype=torch.long, device=scores.device)
        for t in range(T):
            alpha, traceback[t] = (alpha[:, idx] + Ms[t]).max(dim=-1)

        paths = torch.zeros((N, T), dtype=torch.long, device=scores.device)
        state = alpha.argmax(dim=-1)
        for t in reversed(range(T)):
            k = traceback[t].gather(1, state[:, None]).squeeze(1)
            paths[:, t] = torch.where(k > 0, 1 + state % self.n_base, torch.zeros_like(k))
            state = idx[state, k]
        return paths

    @torch.no_grad()
    def base_posteriors(self, scores):
        """
        Forward-backward over the CRF.

        Args:
            scores: (T, N, S * (n_base + 1)) expanded scores.

        Returns:
            (T, N, n_base + 1) probabilities of a stay (column 0) or of a move emitting
            each base at every timestep.
        """
        T, N, _ = scores.shape
        S, K = self.n_states, self.n_base + 1
        idx = self.idx.to(scores.device)
        # flat transition indices grouped by source state, K per state
        out = idx.flatten().argsort(stable=True).view(S, K)
        Ms = scores.view(T, N, S, K)

        # both passes are renormalised per step, the constants cancel in the softmax below
        alpha = scores.new_zeros((T + 1, N, S))
        for t in range(T):
            a = torch.logsumexp(alpha[t][:, idx] + Ms[t], dim=-1)
            alpha[t + 1] = a - a.logsumexp(dim=-1, keepdim=True)
        beta = scores.new_zeros((T + 1, N, S))
        for t in reversed(range(T)):
            flat = Ms[t].reshape(N, S * K)
            b = torch.logsumexp(flat[:, out] + beta[t + 1][:, out // K], dim=-1)
            beta[t] = b - b.logsumexp(dim=-1, keepdim=True)

        probs = scores.new_empty((T, N, K))
        for t in range(T):
            logits = alpha[t][:, idx] + Ms[t] + beta[t + 1][:, :, None]
            post = torch.softmax(logits.view(N, S * K), dim=-1).view(N, S, K)
            probs[t, :, 0] = post[:, :, 0].sum(dim=1)
            # a move into state s emits base s % n_base
            probs[t, :, 1:] = post[:, :, 1:].sum(dim=-1).view(N, S // self.n_base, self.n_base).sum(dim=1)
        return probs

    def qstring(self, path, probs):
        """Phred qualities of the emitted bases, from the posterior of each move."""
        moved = path != 0
        p = probs[moved, path[moved]]
        q = np.clip(np.round(-10 * np.log10(np.maximum(1 - p, 1e-5))), QSCORE_MIN, QSCORE_MAX)
        return (q.astype(np.uint8) + 33).tobytes().decode()

    def path_to_str(self, path):
        alphabet = np.frombuffer(''.join(self.alphabet).encode(), dtype='u1')
        seq = alphabet[path[path != 0]]
        return seq.tobytes().decode()

    def decode(self, scores, time_major=True, expanded=True):
        """
        Decode a batch of score tensors.

        Returns:
            list of (sequence, qstring, moves) per batch entry, moves being a uint8 numpy
            array with one entry per timestep.
        """
        scores = self.prepare(scores, time_major, expanded)
        paths = self.viterbi(scores).cpu().numpy()
        probs = self.base_posteriors(scores).transpose(0, 1).cpu().numpy()
        return [
            (self.path_to_str(path), self.qstring(path, p), (path != 0).astype(np.uint8))
            for path, p in zip(paths, probs)
        ]
