import os
import shutil
from setuptools import setup
from setuptools.command.install_scripts import install_scripts as InstallScripts

class CustomInstallScripts(InstallScripts):
    def run(self):
        src_main = os.path.join(os.path.dirname(__file__), '__main__.py')

        if not os.path.exists(self.build_dir):
            os.makedirs(self.build_dir)

        target_script = os.path.join(self.build_dir, 'antecipa')

        shutil.copy(src_main, target_script)

        os.chmod(target_script, 0o755)

        self.scripts = [target_script]

        InstallScripts.run(self)

setup(
    name='antecipa',
    version='1.0.0',
    description='Receivables anticipation pricing, credit ledger and settlement reconciliation',
    py_modules=['antecipa'],
    scripts=['__main__.py'],  # Required to trigger the install_scripts hook
    cmdclass={'install_scripts': CustomInstallScripts},
    classifiers=[
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],
    install_requires=['typeguard>=4', 'python-dateutil'],
    extras_require={
        'cli': ['sh2py', 'tabulate'],
        'test': ['pytest'],
    },
    python_requires='>=3.9'
)
