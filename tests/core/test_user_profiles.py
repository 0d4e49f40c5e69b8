from src.autoapply.core.user_profiles import UserProfileStore, missing_apply_fields


def test_upsert_profile_create_and_patch(db, now):
    store = UserProfileStore(db)
    created = store.upsert_profile(
        user_id="user_1",
        fields={"first_name": "Ada", "skills": ["Python"], "requires_sponsorship": True},
        now=now,
    )
    assert created["ok"] is True
    assert created["created"] is True
    assert created["profile"]["skills"] == ["Python"]
    assert created["profile"]["requires_sponsorship"] is True
    assert created["profile"]["authorized_to_work"] is True

    patched = store.upsert_profile(user_id="user_1", fields={"last_name": "Lovelace"}, now=now)
    assert patched["created"] is False
    profile = store.get_profile("user_1")
    assert profile["first_name"] == "Ada"
    assert profile["last_name"] == "Lovelace"


def test_upsert_profile_rejects_unknown_fields(db):
    out = UserProfileStore(db).upsert_profile(user_id="user_1", fields={"ssn": "nope"})
    assert out == {"ok": False, "error": "unknown profile fields: ssn"}
    assert UserProfileStore(db).get_profile("user_1") is None


def test_missing_apply_fields():
    assert missing_apply_fields(None) == ["first_name", "last_name", "email", "phone", "resume_text"]
    profile = {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", "phone": " ", "resume_text": "cv"}
    assert missing_apply_fields(profile) == ["phone"]
