"""
Experience Hub

Troubleshooting experience records with hybrid (vector + lexical) retrieval.
"""
