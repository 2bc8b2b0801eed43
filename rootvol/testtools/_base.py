# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
The base test case for rootvol tests.
"""

from unittest import SkipTest

from fixtures import TempDir
import testtools

from twisted.python.filepath import FilePath


class TestCase(testtools.TestCase):
    """
    A ``testtools.TestCase`` with temporary file helpers.
    """

    # eliot.testing.capture_logging only skips log validation for
    # unittest.SkipTest.
    skipException = SkipTest

    def make_temporary_directory(self):
        """
        Create a temporary directory for use in tests.  It is removed when the
        test finishes.

        :return: Path to directory.
        :rtype: FilePath
        """
        return FilePath(self.useFixture(TempDir()).path)

    def make_temporary_file(self, content=b''):
        """
        Create a temporary file for use in tests.

        :param bytes content: Content to write to the file.
        :return: Path to file.
        :rtype: FilePath
        """
        path = self.make_temporary_directory().child(u'temp')
        path.setContent(content)
        return path
