#!/usr/bin/env python3

from setuptools import setup

setup(
    name='keypool',
    version='0.0.1',
    license='GNU GPL',
    keywords='luks cryptsetup encryption storage partitioning',
    description='Encrypted disks unlocked from a keystore',
    entry_points={
        'console_scripts': [
            'keypool = keypool.__main__:script_main']},
    packages=[
        'keypool',
    ],
    install_requires=[
        'python-augeas', 'pyparted', 'cryptography'],
    extras_require={
        'test': ['pytest']},
    classifiers='''
        Programming Language :: Python :: 3
        License :: OSI Approved :: GNU General Public License (GPL)
        Operating System :: POSIX :: Linux
        Intended Audience :: System Administrators
        Topic :: Security :: Cryptography
        Topic :: System :: Filesystems
        Topic :: Utilities
        Environment :: Console
    '''.strip().splitlines(),
    long_description='''
    Encrypted disks unlocked from a keystore.
    Each member disk gets a random keyfile, kept in a small
    encrypted container that is backed up on every member disk.''')
