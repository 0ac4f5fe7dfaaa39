"""
Tests for address and script conversions.
"""

import pytest

from satcore.address import (
    address_to_scriptpubkey,
    create_p2wpkh_script_code,
    get_bech32_hrp,
    hash160,
    is_p2wpkh,
    pubkey_to_p2wpkh_address,
    pubkey_to_p2wpkh_script,
    scriptpubkey_to_address,
)

# Compressed public key of the secp256k1 generator point (private key 1)
G_PUBKEY = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")
G_HASH160 = "751e76e8199196d454941c45d1b3a323f1433bd6"


class TestHash160:
    def test_generator_pubkey(self):
        assert hash160(G_PUBKEY).hex() == G_HASH160


class TestP2WPKH:
    def test_script(self):
        script = pubkey_to_p2wpkh_script(G_PUBKEY)
        assert script.hex() == "0014" + G_HASH160
        assert is_p2wpkh(script)

    def test_rejects_uncompressed_pubkey(self):
        with pytest.raises(ValueError, match="compressed pubkey"):
            pubkey_to_p2wpkh_script(b"\x04" + b"\x00" * 64)

    def test_mainnet_address_prefix(self):
        address = pubkey_to_p2wpkh_address(G_PUBKEY, "mainnet")
        assert address.startswith("bc1q")
        assert address_to_scriptpubkey(address) == pubkey_to_p2wpkh_script(G_PUBKEY)

    def test_network_prefixes(self):
        assert pubkey_to_p2wpkh_address(G_PUBKEY, "testnet").startswith("tb1q")
        assert pubkey_to_p2wpkh_address(G_PUBKEY, "signet").startswith("tb1q")
        assert pubkey_to_p2wpkh_address(G_PUBKEY, "regtest").startswith("bcrt1q")

    def test_uppercase_address_accepted(self):
        address = pubkey_to_p2wpkh_address(G_PUBKEY, "mainnet")
        assert address_to_scriptpubkey(address.upper()) == pubkey_to_p2wpkh_script(G_PUBKEY)

    def test_script_code_is_p2pkh(self):
        code = create_p2wpkh_script_code(G_PUBKEY)
        assert code.hex() == "76a914" + G_HASH160 + "88ac"


class TestLegacyAddresses:
    def test_p2pkh(self):
        script = address_to_scriptpubkey("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH")
        assert script.hex() == "76a914" + G_HASH160 + "88ac"

    def test_p2pkh_to_address(self):
        script = bytes.fromhex("76a914" + G_HASH160 + "88ac")
        assert scriptpubkey_to_address(script, "mainnet") == "1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH"

    def test_p2sh(self):
        script = bytes.fromhex("a914" + G_HASH160 + "87")
        address = scriptpubkey_to_address(script, "mainnet")
        assert address.startswith("3")
        assert address_to_scriptpubkey(address) == script

    def test_testnet_p2sh(self):
        script = bytes.fromhex("a914" + G_HASH160 + "87")
        assert scriptpubkey_to_address(script, "testnet").startswith("2")


class TestInvalid:
    def test_bad_checksum(self):
        address = pubkey_to_p2wpkh_address(G_PUBKEY, "mainnet")
        corrupted = address[:-1] + ("q" if address[-1] != "q" else "p")
        with pytest.raises(ValueError, match="Invalid bech32 address"):
            address_to_scriptpubkey(corrupted)

    def test_garbage(self):
        with pytest.raises(ValueError, match="Invalid base58 address"):
            address_to_scriptpubkey("not-an-address")

    def test_unsupported_script(self):
        with pytest.raises(ValueError, match="Unsupported scriptPubKey"):
            scriptpubkey_to_address(b"\x6a\x04test")

    def test_unknown_network(self):
        with pytest.raises(ValueError, match="Unknown network"):
            get_bech32_hrp("litecoin")


class TestNetworkCheck:
    def test_matching_network(self):
        address = pubkey_to_p2wpkh_address(G_PUBKEY, "regtest")
        assert address_to_scriptpubkey(address, "regtest") == pubkey_to_p2wpkh_script(G_PUBKEY)

    def test_bech32_from_other_network(self):
        address = pubkey_to_p2wpkh_address(G_PUBKEY, "testnet")
        with pytest.raises(ValueError, match="not a mainnet address"):
            address_to_scriptpubkey(address, "mainnet")

    def test_base58_from_other_network(self):
        with pytest.raises(ValueError, match="not a testnet address"):
            address_to_scriptpubkey("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", "testnet")

