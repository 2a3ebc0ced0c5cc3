"""Format-specific source providers.

Each module in this package turns one kind of input (PDF, DOCX, remote URL)
into image payloads the pipeline can analyse.  Every provider reports its
failures as a single typed error and never returns partial output.
"""
