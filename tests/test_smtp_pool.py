import pytest

from email_worker.config import SMTPSettings
from email_worker.smtp_pool import SMTPPool


class DummySMTP:
    def __init__(self, hostname, port, start_tls=True, use_tls=False, timeout=None):
        self.hostname = hostname
        self.port = port
        self.start_tls = start_tls
        self.use_tls = use_tls
        self.timeout = timeout
        self.login_credentials = None
        self.connected = False
        self.closed = False
        self.alive = True
        self.aborted = False

    async def connect(self):
        self.connected = True

    async def login(self, user, password):
        self.login_credentials = (user, password)

    async def noop(self):
        if not self.alive:
            raise RuntimeError("Connection dead")
        return 250, b"OK"

    async def quit(self):
        self.closed = True

    def close(self):
        self.aborted = True


@pytest.fixture(autouse=True)
def patch_aiosmtplib(monkeypatch):
    created = []

    def factory(**kwargs):
        smtp = DummySMTP(**kwargs)
        created.append(smtp)
        return smtp

    monkeypatch.setattr("email_worker.smtp_pool.aiosmtplib.SMTP", factory)
    return created


@pytest.mark.asyncio
async def test_get_connection_reuses_active_instance(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25, user="user", password="pass"), ttl=30)
    smtp1 = await pool.get_connection()
    smtp2 = await pool.get_connection()

    assert smtp1 is smtp2
    assert smtp1.login_credentials == ("user", "pass")
    assert len(patch_aiosmtplib) == 1


@pytest.mark.asyncio
async def test_get_connection_discards_expired_instance(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25), ttl=-1)
    smtp1 = await pool.get_connection()

    smtp2 = await pool.get_connection()
    assert smtp1.closed is True
    assert smtp2 is not smtp1
    assert smtp1.login_credentials is None


@pytest.mark.asyncio
async def test_get_connection_replaces_dead_instance(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25), ttl=30)
    smtp1 = await pool.get_connection()
    smtp1.alive = False

    smtp2 = await pool.get_connection()
    assert smtp2 is not smtp1
    assert smtp1.closed is True


@pytest.mark.asyncio
async def test_cleanup_removes_dead_connections(monkeypatch, patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25), ttl=1)
    smtp = await pool.get_connection()

    async def fake_is_alive(_smtp):
        return False

    monkeypatch.setattr(pool, "_is_alive", fake_is_alive)

    await pool.cleanup()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_secure_connection_disables_starttls(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.secure", port=465, secure=True))
    smtp = await pool.get_connection()
    assert smtp.use_tls is True
    assert smtp.start_tls is False


@pytest.mark.asyncio
async def test_plain_connection_allows_opportunistic_starttls(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=587))
    smtp = await pool.get_connection()
    assert smtp.use_tls is False
    assert smtp.start_tls is None


@pytest.mark.asyncio
async def test_close_quits_all_connections(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25))
    smtp = await pool.get_connection()
    await pool.close()
    assert smtp.closed is True
    assert pool.pool == {}


@pytest.mark.asyncio
async def test_discard_drops_connection_without_quit(patch_aiosmtplib):
    pool = SMTPPool(SMTPSettings(host="smtp.local", port=25))
    smtp1 = await pool.get_connection()

    pool.discard()
    assert smtp1.aborted is True
    assert smtp1.closed is False
    assert pool.pool == {}

    smtp2 = await pool.get_connection()
    assert smtp2 is not smtp1
    pool.discard()
    pool.discard()
