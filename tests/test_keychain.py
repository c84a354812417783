"""
Tests for BIP84/BIP44 address derivation and the lookahead keychain.
"""

import pytest

from spvwallet.models import (
    MAINNET_PARAMS,
    REGTEST_PARAMS,
    TESTNET_PARAMS,
    CoinType,
    NetworkType,
    ScriptType,
)
from spvwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2pkh_script
from spvwallet.wallet.bip32 import ChildIndexSkipped, DerivationError, HDKey
from spvwallet.wallet.keychain import (
    CHANGE_CHAIN,
    RECEIVE_CHAIN,
    KeyChain,
    account_path,
    derive_addresses,
)

# BIP84 test vectors for the "abandon ... about" mnemonic
BIP84_RECEIVE_0 = "bc1qcr8te4kr609gcawutmrza0j4xv80jy8z306fyu"
BIP84_RECEIVE_1 = "bc1qnjg0jd8228aq7egyzacy8cys3knf9xvrerkf9g"
BIP84_CHANGE_0 = "bc1q8c6fshw2dlwun7ekn9qwf37cu2rn755upcp6el"

# BIP44 m/44'/0'/0'/0/0 for the same mnemonic
BIP44_RECEIVE_0 = "1LqBGSKuX5yYUonjxT5qGfpUsXKYYWeabA"


class TestDeriveAddresses:
    def test_bip84_receive_vectors(self, test_seed):
        addresses = derive_addresses(test_seed, "m/84'/0'/0'/0", 2, NetworkType.MAINNET)
        assert [a.address for a in addresses] == [BIP84_RECEIVE_0, BIP84_RECEIVE_1]
        assert addresses[0].path == "m/84'/0'/0'/0/0"
        assert addresses[1].index == 1

    def test_bip84_change_vector(self, test_seed):
        (change,) = derive_addresses(test_seed, "m/84'/0'/0'/1", 1, "mainnet")
        assert change.address == BIP84_CHANGE_0
        assert change.chain == CHANGE_CHAIN

    def test_prefix_stability(self, test_seed):
        few = derive_addresses(test_seed, "m/84'/1'/0'/0", 3, NetworkType.TESTNET)
        many = derive_addresses(test_seed, "m/84'/1'/0'/0", 10, NetworkType.TESTNET)
        assert many[:3] == few

    def test_zero_count(self, test_seed):
        assert derive_addresses(test_seed, "m/84'/1'/0'/0", 0, NetworkType.TESTNET) == []

    def test_negative_count(self, test_seed):
        with pytest.raises(ValueError):
            derive_addresses(test_seed, "m/84'/1'/0'/0", -1, NetworkType.TESTNET)

    def test_network_changes_encoding_only(self, test_seed):
        (mainnet,) = derive_addresses(test_seed, "m/84'/0'/0'/0", 1, NetworkType.MAINNET)
        (regtest,) = derive_addresses(test_seed, "m/84'/0'/0'/0", 1, NetworkType.REGTEST)
        assert regtest.address.startswith("bcrt1")
        assert regtest.scriptpubkey == mainnet.scriptpubkey

    def test_skipped_index_is_reported_and_stepped_over(self, monkeypatch, test_seed):
        original = HDKey.derive_child

        def flaky(self, index):
            if index == 1 and self.depth == 4:
                raise ChildIndexSkipped(index)
            return original(self, index)

        monkeypatch.setattr(HDKey, "derive_child", flaky)
        skipped = []
        addresses = derive_addresses(
            test_seed, "m/84'/0'/0'/0", 2, NetworkType.MAINNET, on_skip=skipped.append
        )
        assert [a.index for a in addresses] == [0, 2]
        assert len(skipped) == 1
        assert skipped[0].path == "m/84'/0'/0'/0/1"


class TestKeyChain:
    @pytest.fixture
    def keychain(self, test_seed):
        return KeyChain(test_seed, MAINNET_PARAMS, CoinType.BITCOIN, lookahead=5)

    def test_account_path(self):
        assert account_path(CoinType.TESTNET) == "m/84'/1'/0'"
        assert account_path(0, 2) == "m/84'/0'/2'"

    def test_initial_window(self, keychain):
        assert len(keychain.addresses(RECEIVE_CHAIN)) == 5
        assert len(keychain.addresses(CHANGE_CHAIN)) == 5
        assert len(keychain.watched_scripts()) == 10

    def test_receive_address_is_stable_until_used(self, keychain):
        first = keychain.receive_address()
        assert first.address == BIP84_RECEIVE_0
        assert keychain.receive_address() == first

        keychain.mark_used(first.scriptpubkey)
        second = keychain.receive_address()
        assert second.address == BIP84_RECEIVE_1

    def test_new_receive_address_advances(self, keychain):
        first = keychain.receive_address()
        assert keychain.new_receive_address().index == first.index + 1

    def test_change_addresses_never_repeat(self, keychain):
        first = keychain.next_change_address()
        second = keychain.next_change_address()
        assert first.address == BIP84_CHANGE_0
        assert second.index == first.index + 1

    def test_window_grows_past_used(self, keychain):
        last = keychain.addresses(RECEIVE_CHAIN)[-1]
        added = keychain.mark_used(last.scriptpubkey)
        assert added == 5
        assert len(keychain.addresses(RECEIVE_CHAIN)) == 10

    def test_lookup(self, keychain):
        address = keychain.addresses(RECEIVE_CHAIN)[2]
        assert keychain.lookup_script(address.scriptpubkey) == address
        assert keychain.lookup_address(address.address) == address
        assert keychain.is_mine(address.scriptpubkey)
        assert not keychain.is_mine(b"\x00\x14" + bytes(20))

    def test_indices_restore(self, test_seed, keychain):
        keychain.new_receive_address()
        keychain.new_receive_address()
        keychain.next_change_address()
        indices = keychain.address_indices
        assert indices == {RECEIVE_CHAIN: 1, CHANGE_CHAIN: 0}

        restored = KeyChain(test_seed, MAINNET_PARAMS, CoinType.BITCOIN, lookahead=5)
        restored.restore_indices(indices)
        assert restored.new_receive_address().index == 2
        assert restored.next_change_address().index == 1

    def test_restore_beyond_window(self, test_seed):
        keychain = KeyChain(test_seed, REGTEST_PARAMS, CoinType.TESTNET, lookahead=3)
        keychain.restore_indices({RECEIVE_CHAIN: 12})
        assert keychain.new_receive_address().index == 13
        assert len(keychain.addresses(RECEIVE_CHAIN)) >= 16

    def test_private_key_matches_address(self, keychain):
        address = keychain.receive_address()
        key = keychain.private_key_for(address.path)
        assert key.public_key.format(compressed=True) == address.pubkey

    def test_private_key_outside_account(self, keychain):
        with pytest.raises(DerivationError):
            keychain.private_key_for("m/44'/0'/0'/0/0")

    def test_only_public_account_key_cached(self, keychain):
        assert not keychain._account_key.is_private
        assert keychain.account_xpub.startswith("xpub")


class TestLegacyKeyChain:
    @pytest.fixture
    def keychain(self, test_seed):
        return KeyChain(
            test_seed, MAINNET_PARAMS, CoinType.BITCOIN, lookahead=5, script_type=ScriptType.P2PKH
        )

    def test_account_path(self):
        assert account_path(CoinType.BITCOIN, script_type=ScriptType.P2PKH) == "m/44'/0'/0'"
        assert account_path(CoinType.TESTNET, 1, ScriptType.P2PKH) == "m/44'/1'/1'"

    def test_bip44_vector(self, keychain):
        first = keychain.receive_address()
        assert first.address == BIP44_RECEIVE_0
        assert first.path == "m/44'/0'/0'/0/0"
        assert first.scriptpubkey == pubkey_to_p2pkh_script(first.pubkey)
        assert keychain.is_mine(first.scriptpubkey)

    def test_derive_addresses_infers_legacy(self, test_seed):
        (first,) = derive_addresses(test_seed, "m/44'/0'/0'/0", 1, NetworkType.MAINNET)
        assert first.address == BIP44_RECEIVE_0

    def test_testnet_encoding(self, test_seed):
        addresses = derive_addresses(test_seed, "m/44'/1'/0'/0", 3, NetworkType.TESTNET)
        for derived in addresses:
            assert derived.address[0] in "mn"
            script = address_to_scriptpubkey(derived.address, TESTNET_PARAMS)
            assert script == derived.scriptpubkey == pubkey_to_p2pkh_script(derived.pubkey)

    def test_explicit_type_overrides_prefix(self, test_seed):
        (derived,) = derive_addresses(
            test_seed, "m/44'/0'/0'/0", 1, NetworkType.MAINNET, script_type=ScriptType.P2WPKH
        )
        assert derived.address.startswith("bc1q")

    def test_private_key_matches_address(self, keychain):
        change = keychain.next_change_address()
        key = keychain.private_key_for(change.path)
        assert key.public_key.format(compressed=True) == change.pubkey
        with pytest.raises(DerivationError):
            keychain.private_key_for("m/84'/0'/0'/0/0")
