import io

import setuptools

name = 'blockchat-fleet'
desc = 'Fleet deployment and test harness for block_chat experiments.'

author = "block_chat developers"

packages = setuptools.find_packages(exclude=['test', 'test.*'])

test_require = []
with io.open('requirements-dev.txt') as f:
    test_require = [l.strip() for l in f if l.strip() and not l.startswith('#')]

install_require = []
with io.open('requirements.txt') as f:
    install_require = [l.strip() for l in f if l.strip() and not l.startswith('#')]

setup_params = dict(
    name=name,
    version='0.1.0',
    description=desc,
    author=author,
    packages=packages,
    py_modules=['run'],
    install_requires=install_require,
    extras_require={'test': test_require},
    entry_points={
        'console_scripts': ['blockchat-fleet=run:main'],
    },
    python_requires='>=3.6'
)


def main():
    """Package installation entry point."""
    setuptools.setup(**setup_params)


if __name__ == '__main__':
    main()
