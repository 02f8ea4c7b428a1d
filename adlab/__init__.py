"""
adlab - provision a Hyper-V Active Directory lab from a declarative definition.
"""

__version__ = "0.1.0"
