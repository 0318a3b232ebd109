import hashlib

import pytest

from eacc_agent.storage.address import (
    digest_hex,
    digest_to_locator,
    is_locator,
    locator_to_digest,
)

# Well-known CIDv0 of the empty unixfs directory.
EMPTY_DIR_CID = "QmUNLLsPACCz1vLxQVkXqqLX5R1X345qqfHbsf67hvA3Nn"


def test_known_locator_inverts_and_reencodes():
    digest = locator_to_digest(EMPTY_DIR_CID)
    assert digest is not None and len(digest) == 32
    assert digest_to_locator(digest) == EMPTY_DIR_CID
    assert is_locator(EMPTY_DIR_CID)


def test_digest_to_locator_produces_cidv0():
    digest = hashlib.sha256(b"job content").digest()
    locator = digest_to_locator(digest)
    assert locator.startswith("Qm") and len(locator) == 46
    assert locator_to_digest(locator) == digest


def test_digest_to_locator_is_idempotent():
    locator = digest_to_locator(hashlib.sha256(b"x").digest())
    assert digest_to_locator(locator) == locator
    assert digest_to_locator(digest_to_locator(locator)) == locator


def test_hex_digests_are_accepted():
    digest = hashlib.sha256(b"y").digest()
    assert digest_to_locator(digest_hex(digest)) == digest_to_locator(digest)
    assert digest_to_locator(digest.hex()) == digest_to_locator(digest)


def test_invalid_digests_raise_value_error():
    with pytest.raises(ValueError):
        digest_to_locator(b"\x01" * 31)
    with pytest.raises(ValueError):
        digest_to_locator("not-a-digest")


def test_locator_to_digest_is_best_effort():
    assert locator_to_digest("bafybeigdyrzt5sfp7udm7hu76uh7y26nf3efuylqabf3oclgtqy55fbzdi") is None
    assert locator_to_digest("Qm") is None
    assert not is_locator("0x" + "00" * 32)
