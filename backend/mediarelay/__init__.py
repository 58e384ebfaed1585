"""
mediarelay: retrieve, archive, transform and republish large media files.

Each catalogued item moves through a strict status sequence:

    cataloged → downloading → archiving → compressing → verifying → uploading → completed

Any non-terminal step may fail; failed items re-enter the pipeline on a later
run until their retry budget is exhausted.
"""

__version__ = "0.4.0"
