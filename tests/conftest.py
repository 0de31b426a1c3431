pytest_plugins = [
    "tests.fixtures.aws_fixtures",
    "tests.fixtures.cluster_fixtures",
    "tests.fixtures.manifest_fixtures",
]
