#!/usr/bin/env python

import os
import re
from setuptools import setup

version_file = os.path.join('multipart_params', '__init__.py')
with open(version_file, 'rb') as f:
    version_data = f.read().strip().decode('ascii')

version_re = re.compile(r'((?:\d+)\.(?:\d+)\.(?:\d+))')
version = version_re.search(version_data).group(0)

tests_require = [
    'pytest',
    'pytest-cov',
    'pytest-timeout',
    'PyYAML',
]

setup(name='python-multipart-params',
      version=version,
      description='A streaming multipart/form-data parser with request helpers',
      license='Apache',
      platforms='any',
      zip_safe=False,
      packages=[
          'multipart_params',
      ],
      python_requires='>=3.9',
      extras_require={
          'test': tests_require,
          'dev': tests_require + ['invoke', 'twine', 'wheel'],
          'fuzz': ['atheris'],
      },
      classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Web Environment',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: Apache Software License',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Software Development :: Libraries :: Python Modules'
      ],
     )
