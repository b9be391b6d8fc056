[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dscextract"
version = "0.1.0"
description = "Walk dyld shared cache files and rebuild the linkedit of the dylibs they contain"
requires-python = ">=3.10"
dependencies = []
keywords = ["dyld", "shared cache", "mach-o", "dylib", "linkedit", "reverse engineering"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Software Development :: Disassemblers",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["dscextract"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
