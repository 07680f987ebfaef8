from pathlib import Path

from setuptools import find_packages, setup

cwd = Path(__file__).parent
description_file = cwd / "README.md"
if description_file.is_file():
    long_description = description_file.read_text()
else:
    long_description = ""

setup(
    name="macont",
    version="0.1.0",
    description="Numerical continuation of equilibria, periodic orbits and their codim-2 bifurcations",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=["numpy", "scipy", "matplotlib", "numdifftools"],
    extras_require={"dev": ["pytest", "ruff", "mypy", "nox"]},
)
