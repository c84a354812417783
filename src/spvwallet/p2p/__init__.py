"""
Bitcoin P2P networking: wire messages, peers, header chain and sync.
"""
