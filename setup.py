import os
import setuptools

with open("README.md", "r") as fh:
    long_description = fh.read()

install_requires = [
    'acme >= 2.0.0',
    'cryptography >= 42.0.0',
    'dnspython >= 2.0.0',
    'flask >= 2.0.1',
    'josepy >= 1.13.0',
    'requests >= 2.25.1',
    'pyyaml >= 5.3.1',
]

extras_require = {
    # Test dependencies
    'tests': [
        'pylint',
        'pytest-cov >= 2.10.1',
        'requests-mock >= 1.7.0',
    ]
}

# Generate minimum dependencies
extras_require['tests-min'] = [dep.replace('>=', '==') for dep in extras_require['tests']]
if os.getenv('ACMERENEWER_MIN_DEPS', False):
    install_requires = [dep.replace('>=', '==') for dep in install_requires]
    # flask 2.0.1 won't work with werkzeug >= 2.1
    install_requires.insert(0, 'werkzeug == 2.0.2')

setuptools.setup(
    name="acme-renewer",
    version="0.1.0",
    description="Python application to renew certificates from ACME servers through DNS-01 challenges "
                "and store them as PKCS#12 bundles on a secret store.",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=['tests']),
    entry_points={
        'console_scripts': [
            'acme-renewer-backend = acme_renewer.renewer:main'
        ]
    },
    classifiers=(
        "Programming Language :: Python :: 3.9",
        "License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)",
        "Operating System :: OS Independent",
    ),
    install_requires=install_requires,
    extras_require=extras_require
)
