"""
Cluster lifecycle orchestration: roster, adapters, recovery and workflows.
"""
