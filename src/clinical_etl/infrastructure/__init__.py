"""Infrastructure layer for Clinical-ETL.

Configuration, logging, and the local implementations of the collaborator
ports (blob store, message channel, audit sink) plus the metrics sink.
"""
