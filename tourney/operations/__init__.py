"""
Operations Layer

Business logic operations that compose database methods into workflows.
Operations modules handle multi-step transactions, validation and business
rules while the database layer stays pure data access.

Each operations module focuses on a specific domain:
- VoteOperations: vote ledger (submit, close window, retire)
- TournamentOperations: lifecycle transitions and their side effects
- WalletOperations: append-only settlement (fees, prizes, refunds)
- PlayerOperations: onboarding and moderation
"""
