"""
Operator command line tools.
"""
