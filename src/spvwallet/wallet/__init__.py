"""
Wallet: keys, addresses, transactions, state and the send path.

Submodules are imported directly (spvwallet.wallet.keychain and so on); the
P2P layer depends on wallet.transaction, so nothing is re-exported here.
"""
