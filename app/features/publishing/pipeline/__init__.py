"""
Publishing pipeline: ingestion, the gate sequence, reply templates and text helpers.
"""
