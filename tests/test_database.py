from sqlalchemy.pool import NullPool, QueuePool

from contextfeed.database import make_engine


async def test_default_engine_uses_bounded_pool():
    engine = make_engine("mysql+aiomysql://root:@tidb:4000/social_feed")

    pool = engine.sync_engine.pool
    assert isinstance(pool, QueuePool)
    assert pool.size() == 20
    assert pool._pre_ping
    await engine.dispose()


async def test_pool_options_replace_defaults(tmp_path):
    engine = make_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'x.db'}", pool_options={"poolclass": NullPool}
    )

    assert isinstance(engine.sync_engine.pool, NullPool)
    await engine.dispose()
