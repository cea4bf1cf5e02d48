from vm_orchestrator.auth import hash_token, secure_compare_token, token_matches


def test_token_hash_and_compare():
    token = "abc123"
    hashed = hash_token(token)
    assert secure_compare_token(token, hashed)
    assert not secure_compare_token("wrong", hashed)
    assert not secure_compare_token(token, None)


def test_token_matches_requires_both_sides():
    assert token_matches("secret", "secret")
    assert not token_matches("secret", "other")
    assert not token_matches(None, "secret")
    assert not token_matches("secret", None)
