"""
Luna Deposits

Crypto deposit settlement service: payment intents, on-chain verification
and exactly-once wallet crediting.
"""

__version__ = "0.1.0"
