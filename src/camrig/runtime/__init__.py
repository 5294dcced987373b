"""
Per-frame-set processing: synchronization, dense depth, sparse matching,
triangulation and the uncertainty summary.

Everything here works on one drained frame set and one calibration snapshot;
nothing is carried across passes.
"""
