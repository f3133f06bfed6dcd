from .candidate_sorter import CandidateSorter

__all__ = ["CandidateSorter"]
