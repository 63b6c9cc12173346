"""
AutoOrganize Knowledge Core.

Entity extraction, relationship building, embeddings and graph queries
over a local document corpus.
"""

__version__ = "0.1.0"
