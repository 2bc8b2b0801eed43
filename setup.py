# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Generate a Rootvol package that can be installed into node images.
"""

import re

from setuptools import setup, find_packages

with open("README.rst") as readme:
    description = readme.read()

with open("rootvol/__init__.py") as init:
    version = re.search(
        r'^__version__ = "([^"]+)"', init.read(), re.MULTILINE).group(1)


def parse_requirements(requirements_file):
    """
    Parse a requirements file, skipping comments and blank lines.

    Environment markers are passed through for setuptools to evaluate.
    """
    requirements = []
    with open(requirements_file) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#'):
                continue
            requirements.append(line)
    return requirements

# Parse the ``.in`` files. This will allow the dependencies to float when
# Rootvol is installed using ``pip install .``.
install_requires = parse_requirements("requirements/rootvol.txt.in")
dev_requires = parse_requirements("requirements/rootvol-dev.txt.in")

setup(
    # This is the human-targetted name of the software being packaged.
    name="Rootvol",
    # This is a string giving the version of the software being packaged.  For
    # simplicity it should be something boring like X.Y.Z.
    version=version,
    # This identifies the creators of this software.  This is left symbolic for
    # ease of maintenance.
    author="ClusterHQ Team",
    # This is contact information for the authors.
    author_email="support@clusterhq.com",
    # Here is a website where more information about the software is available.
    url="https://clusterhq.com/",

    # A short identifier for the license under which the project is released.
    license="Apache License, Version 2.0",

    # Some details about what Rootvol is.  Synchronized with the README.rst to
    # keep it up to date more easily.
    long_description=description,

    # This setuptools helper will find everything that looks like a *Python*
    # package (in other words, things that can be imported) which are part of
    # the Rootvol package.
    packages=find_packages(include=('rootvol', 'rootvol.*')),

    package_data={
        # The rule table used when the configuration names none.
        'rootvol': ['rules.yml'],
    },

    entry_points={
        # These are the command-line programs we want setuptools to install.
        'console_scripts': [
            'rootvol-bootstrap = rootvol.script:rootvol_bootstrap_main',
            'rootvol-plan = rootvol.script:rootvol_plan_main',
        ],
    },

    install_requires=install_requires,

    extras_require={
        # This extra is for developers who need to work on Rootvol itself.
        "dev": dev_requires,
    },

    python_requires=">=3.8",

    # Some "trove classifiers" which are relevant.
    classifiers=[
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        ],
    )
