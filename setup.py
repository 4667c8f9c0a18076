# SPDX-License-Identifier: LGPL-3.0-or-later
from setuptools import setup, find_packages

setup(
    name="img2luks",
    version="0.1.0",
    packages=find_packages(include=["img2luks", "img2luks.*"]),
    install_requires=[l.strip() for l in open("requirements.txt", encoding="utf-8") if l.strip() and not l.startswith("#")],
    extras_require={"test": ["pytest"]},
    entry_points={"console_scripts": ["img2luks=img2luks.__main__:main"]},
)
