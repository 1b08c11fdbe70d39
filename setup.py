#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapodm',
    version='0.1.0',
    description='Map Python classes to LDAP objectclasses and query them with typed filters',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'odm'],
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'Django',
        'pytz',
        'python-ldap',
    ],
    extras_require={
        'test': [
            'python-ldap-faker',
            'pytest',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
