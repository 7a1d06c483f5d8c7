"""Signal stores: the three independent aggregates the coordinator reads.

- Reports: community reports with expiry, dedup and trust weighting
- Labels: labeler annotations with per-namespace consensus
- Mutes: personal and subscribed mute lists
"""
