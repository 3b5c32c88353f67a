import importlib


def test_utils_package_imports_cleanly():
    package = importlib.reload(importlib.import_module('src.utils'))
    assert package.__doc__.startswith("Shared helpers")
    assert importlib.import_module('src.utils.logging_config').get_logger('memoire.test') is not None
