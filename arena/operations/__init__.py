"""
Operations Layer

Business logic for the duel engine. Each module composes database access
into multi-step, transactional workflows:
- WizardOperations: wizard lookups, ownership and win/loss counters
- DuelOperations: duel creation, joining, cancellation and start
- RoundOperations: action submission, round resolution, introduction and conclusion
- LobbyOperations: FIFO matchmaking and duel materialization
- CampaignOperations: single-player ladder against scripted opponents
- CreditOperations: one image credit per duel

Operations accept an optional session so a caller can fold several of
them into one transaction.
"""
