import asyncio

import aiohttp
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from modules.whitelist.errors import ConfigurationError, RemoteAPIError
from modules.whitelist.github import GitHubAppAuth, GitHubClient, clear_token_cache
from modules.whitelist.manager import WhitelistManager
from modules.whitelist.settings import GitHubSettings
from modules.whitelist.store import WhitelistStore


@pytest.fixture(scope="module")
def rsa_key():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return private_pem, public_pem


def test_app_jwt_claims_and_reuse_window(rsa_key):
    private_pem, public_pem = rsa_key
    now = [1_700_000_000.0]
    auth = GitHubAppAuth("123", private_pem, "42", clock=lambda: now[0])

    token = auth.app_jwt()
    claims = jwt.decode(token, public_pem, algorithms=["RS256"], options={"verify_exp": False, "verify_iat": False})
    assert claims == {"iat": 1_700_000_000 - 60, "exp": 1_700_000_000 + 600, "iss": "123"}

    now[0] += 300
    assert auth.app_jwt() == token
    now[0] += 241
    assert auth.app_jwt() != token


def test_invalid_private_key_is_a_configuration_error():
    auth = GitHubAppAuth("123", "not a pem", "42")
    with pytest.raises(ConfigurationError):
        auth.app_jwt()


def test_installation_token_is_cached_until_refresh(rsa_key, fake_github):
    private_pem, public_pem = rsa_key

    async def runner():
        async with fake_github.serve() as base_url:
            auth = GitHubAppAuth("123", private_pem, "42", api_url=base_url)
            async with aiohttp.ClientSession() as session:
                first = await auth.installation_token(session)
                second = await auth.installation_token(session)
                clear_token_cache()
                third = await auth.installation_token(session)
            return first, second, third

    first, second, third = asyncio.run(runner())
    assert first == second == "ghs_installation1"
    assert third == "ghs_installation2"
    assert fake_github.token_requests == 2

    request = fake_github.calls_for("POST", "/app/installations/42/access_tokens")[0]
    bearer = request["headers"]["Authorization"].split(" ", 1)[1]
    claims = jwt.decode(bearer, public_pem, algorithms=["RS256"])
    assert claims["iss"] == "123"


def test_installation_token_error_raises_remote_error(rsa_key, fake_github):
    private_pem, _ = rsa_key
    fake_github.fail("POST", "/access_tokens", 401)

    async def runner():
        async with fake_github.serve() as base_url:
            auth = GitHubAppAuth("123", private_pem, "42", api_url=base_url)
            async with aiohttp.ClientSession() as session:
                with pytest.raises(RemoteAPIError) as excinfo:
                    await auth.installation_token(session)
            return excinfo.value

    assert asyncio.run(runner()).status == 401


def test_publish_prefers_app_credentials(rsa_key, fake_github, github_env, seed):
    private_pem, _ = rsa_key
    github_env.setenv("GITHUB_APP_ID", "123")
    # single-line env form with escaped newlines
    github_env.setenv("GITHUB_APP_PRIVATE_KEY", private_pem.replace("\n", "\\n"))
    github_env.setenv("GITHUB_APP_INSTALLATION_ID", "42")

    async def runner():
        async with fake_github.serve() as base_url:
            github_env.setenv("GITHUB_API_URL", base_url)
            store = WhitelistStore()
            user, _ = await seed(store, "1", "usr_a", display_name="Alice")
            await store.upsert_entry(user.id)
            manager = WhitelistManager(store, delay=0)
            await manager.publish("first")
            await manager.publish("second", True)

    asyncio.run(runner())
    assert fake_github.token_requests == 1
    git_calls = [c for c in fake_github.calls if "/git/" in c["path"]]
    assert git_calls
    assert {c["headers"]["Authorization"] for c in git_calls} == {"Bearer ghs_installation1"}


def test_commit_files_requires_files():
    settings = GitHubSettings(
        owner="o",
        repo="r",
        branch="main",
        encoded_path="e",
        decoded_path="d",
        api_url="http://unused",
        token="t",
    )

    async def runner():
        async with GitHubClient(settings) as client:
            with pytest.raises(ValueError):
                await client.commit_files({}, "empty")

    asyncio.run(runner())
