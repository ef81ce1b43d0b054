from importlib.metadata import PackageNotFoundError, version

try:
    VERSION = version("relay-mcp")
except PackageNotFoundError:  # Running from a source checkout
    VERSION = "0.0.0"
