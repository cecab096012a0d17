"""
Reports and graph views over the finished result store.

Provides pandas summaries of the hierarchy and links, and a NetworkX
view of canonical nodes with hierarchy and associative edges.
"""
