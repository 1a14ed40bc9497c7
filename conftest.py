pytest_plugins = ["src.tls_fixtures.pki.plugin"]
