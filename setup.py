#!/usr/bin/env python
# -*- coding: utf-8 -*-
# Copyright: (c) 2020 Jordan Borean (@jborean93) <jborean93@gmail.com>
# MIT License (see LICENSE or https://opensource.org/licenses/MIT)

from setuptools import setup


setup(
    name='pywinrs',
    version='0.1.0.dev0',
    packages=['pywinrs'],
    include_package_data=True,
    install_requires=[
        'cryptography',
        'pyspnego',
        'requests>=2.9.1',
        'xmltodict',
    ],
    extras_require={
        'kerberos': [
            'pyspnego[kerberos]',
        ],
        'test': [
            'pytest',
            'pytest-mock',
            'pyyaml',
        ],
    },
    author='Jordan Borean',
    author_email='jborean93@gmail.com',
    description='WinRM remote shell, PowerShell pipeline and WQL client for Python',
    keywords='winrm winrs wsman windows powershell wql',
    license='MIT',
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 4 - Beta',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
)
