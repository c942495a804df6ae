"""
Provides project-level commands. Commands are run via `python setup.py <command> [args]`

Commands available:

- unittest: runs the unit tests beside the modules in src/remotebridge
"""

from setuptools import setup, Command

import os


class RunInRootCommand(Command):
    user_options = []

    def initialize_options(self):
        self.cwd = None

    def finalize_options(self):
        self.cwd = os.getcwd()

    def run(self):
        assert os.getcwd() == self.cwd, 'Must be in package root: %s' % self.cwd
        self.runcmd()

    def runcmd(self):
        pass


class UnitTestCommand(RunInRootCommand):
    description = "runs the unit tests"

    def runcmd(self):
        os.system('pytest src/remotebridge')


setup(
    name='remote-bridge-py',
    version='1.5',
    description='Bridges a serially connected device to a remote HTTPS control gateway.',
    url='',
    author='',
    author_email='',
    license='LGPL',
    package_dir={'': 'src'},
    packages=['remotebridge', 'remotebridge.config', 'remotebridge.support'],
    package_data={'remotebridge.config': ['*.cfg']},
    python_requires='>=3.7',
    install_requires=[
        'pyserial',
        'requests',
        'configobj',
    ],
    extras_require={
        'test': ['pytest', 'PyHamcrest', 'timeout-decorator'],
    },
    entry_points={
        'console_scripts': ['remote-bridge=remotebridge.cli:main'],
    },
    zip_safe=False,
    cmdclass={
        'unittest': UnitTestCommand,
    }
)
