"""Unit tests for authdb.db.sources — SourceResolver priority and defaults."""

import pytest

from authdb.db.sources import (
    DISCRETE_ORIGIN,
    DiscreteVars,
    RawSource,
    SourceKind,
    SourceResolver,
    classify_url,
)


class TestClassifyUrl:
    @pytest.mark.parametrize("url,kind", [
        ("mysql://u:p@h/db", SourceKind.PROVIDER_URL),
        ("MariaDB://h/db", SourceKind.PROVIDER_URL),
        ("jdbc:mysql://h/db", SourceKind.JDBC_URL),
        ("JDBC:mysql://h/db", SourceKind.JDBC_URL),
        ("postgres://h/db", SourceKind.JDBC_URL),
        ("db.example.com:3306/auth", SourceKind.JDBC_URL),
    ])
    def test_kinds(self, url, kind):
        assert classify_url(url) == kind


class TestSourceResolver:
    def setup_method(self):
        self.resolver = SourceResolver()

    def test_nothing_configured_uses_defaults(self, make_config):
        source = self.resolver.resolve(make_config())
        assert source.kind == SourceKind.DISCRETE_VARS
        assert source.origin == DISCRETE_ORIGIN
        assert source.url is None
        assert source.values == DiscreteVars("localhost", "3306", "authdb", "root", "")

    def test_database_url_wins(self, make_config):
        config = make_config(
            DATABASE_URL="mysql://a:b@one/db1",
            MYSQL_URL="mysql://c:d@two/db2",
            DB_HOST="three",
        )
        source = self.resolver.resolve(config)
        assert source.origin == "DATABASE_URL"
        assert source.kind == SourceKind.PROVIDER_URL
        assert source.url == "mysql://a:b@one/db1"

    def test_mysql_url_used_when_database_url_absent(self, make_config):
        source = self.resolver.resolve(make_config(MYSQL_URL="jdbc:mysql://two:3307/db2"))
        assert source.origin == "MYSQL_URL"
        assert source.kind == SourceKind.JDBC_URL

    def test_blank_url_is_absent(self, make_config):
        source = self.resolver.resolve(make_config(DATABASE_URL="   ", DB_HOST="h"))
        assert source.kind == SourceKind.DISCRETE_VARS
        assert source.values.host == "h"

    def test_discrete_values_trimmed(self, make_config):
        source = self.resolver.resolve(make_config(DB_HOST="  db.local ", DB_PORT=" 3310 "))
        assert source.values.host == "db.local"
        assert source.values.port == "3310"

    def test_database_username_alias(self, make_config):
        source = self.resolver.resolve(make_config(DATABASE_USERNAME="alias", DATABASE_PASSWORD="pw"))
        assert source.values.username == "alias"
        assert source.values.password == "pw"

    def test_db_username_preferred_over_alias(self, make_config):
        source = self.resolver.resolve(make_config(DB_USERNAME="primary", DATABASE_USERNAME="alias"))
        assert source.values.username == "primary"

    def test_jdbc_credentials_lookup_order(self, make_config):
        config = make_config(
            MYSQL_URL="jdbc:mysql://h/db",
            MYSQL_USER="mysql_user",
            MYSQL_PASSWORD="mysql_pw",
            DB_USERNAME="db_user",
        )
        source = self.resolver.resolve(config)
        assert source.values.username == "mysql_user"
        assert source.values.password == "mysql_pw"

    def test_jdbc_credentials_default_to_root(self, make_config):
        source = self.resolver.resolve(make_config(DATABASE_URL="jdbc:mysql://h/db"))
        assert source.values.username == "root"
        assert source.values.password == ""

    def test_candidates_order_and_discrete_last(self, make_config):
        config = make_config(DATABASE_URL="mysql://a@h/db", MYSQL_URL="jdbc:mysql://h/db")
        chain = self.resolver.candidates(config)
        assert [s.origin for s in chain] == ["DATABASE_URL", "MYSQL_URL", DISCRETE_ORIGIN]

    def test_resolve_is_repeatable(self, make_config):
        config = make_config(DATABASE_URL="mysql://a:b@h/db")
        assert self.resolver.resolve(config) == self.resolver.resolve(config)

    def test_custom_url_keys(self, make_config):
        resolver = SourceResolver(url_keys=("CUSTOM_URL",))
        source = resolver.resolve(make_config(CUSTOM_URL="mysql://h/db", DATABASE_URL="mysql://x/y"))
        assert source.origin == "CUSTOM_URL"


class TestRawSource:
    def test_describe_masks_url(self):
        source = RawSource(SourceKind.PROVIDER_URL, "DATABASE_URL", "mysql://a:secret@h/db")
        assert "secret" not in source.describe()
        assert source.masked_url == "mysql://a:****@h/db"

    def test_repr_hides_password(self):
        source = RawSource(
            SourceKind.DISCRETE_VARS,
            DISCRETE_ORIGIN,
            values=DiscreteVars(password="hunter2"),
        )
        assert "hunter2" not in repr(source)
        assert "hunter2" not in source.describe()
