def reverse_complement(seq: str) -> str:
    """Computes the reverse complement of a DNA sequence."""
    complement_map = str.maketrans("ATCGN", "TAGCN")
    return seq.upper().translate(complement_map)[::-1]
