"""API Routers package."""
from . import auth, positions, board, transactions, master_data

__all__ = ['auth', 'positions', 'board', 'transactions', 'master_data']
