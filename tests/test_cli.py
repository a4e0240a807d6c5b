"""Tests for argument handling and mode selection in main()."""
import io
import json

import pytest

import netlog

from conftest import strip_ansi


class TtyIn(io.StringIO):
    def isatty(self):
        return True


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv('NETLOG_HOME', str(tmp_path))
    (tmp_path / netlog.OUI_FILE).write_text('00-11-22   (hex)\t\tCimsys Inc\n')
    return tmp_path


@pytest.fixture
def tty(monkeypatch):
    monkeypatch.setattr('sys.stdin', TtyIn())


def test_state_home(monkeypatch, tmp_path):
    monkeypatch.setenv('NETLOG_HOME', str(tmp_path))
    assert netlog.state_home() == tmp_path
    monkeypatch.delenv('NETLOG_HOME')
    assert netlog.state_home() == netlog.Path(netlog.__file__).resolve().parent


class TestStreamMode:

    def test_highlights_and_persists(self, home, monkeypatch, capsys):
        monkeypatch.setattr('sys.stdin', io.StringIO(
            'clientJoin 00:11:22:33:44:55 vlanId="30"\nplain line\n'))

        assert netlog.main([]) == 0

        out = capsys.readouterr().out.splitlines()
        assert [strip_ansi(l) for l in out] == [
            'clientJoin 00:11:22:33:44:55 (Cimsys Inc) vlanId="30" (VLAN 30)',
            'plain line',
        ]
        colors = json.loads((home / netlog.COLOR_FILE).read_text())
        assert colors == {'map': {'001122334455': netlog.MAC_PALETTE[0]}, 'index': 1}
        assert json.loads((home / netlog.VLAN_FILE).read_text()) == {'30': 'VLAN 30'}

    def test_piped_input_wins_over_file(self, home, monkeypatch, capsys):
        monkeypatch.setattr('sys.stdin', io.StringIO('from stdin\n'))

        assert netlog.main(['-f', str(home / 'ignored.log')]) == 0
        assert capsys.readouterr().out == 'from stdin\n'

    @pytest.mark.parametrize('argv', [['--bogus'], ['-n', 'ten'], ['-n'],
                                      ['-f', '-n', '-3', 'x.log']])
    def test_piped_input_ignores_bad_arguments(self, home, monkeypatch, capsys, argv):
        monkeypatch.setattr('sys.stdin', io.StringIO('hello\n'))

        assert netlog.main(argv) == 0
        assert capsys.readouterr().out == 'hello\n'

    def test_colours_stable_across_runs(self, home, monkeypatch, capsys):
        for line in ('aa:aa:aa:aa:aa:aa\n', 'bb:bb:bb:bb:bb:bb\naa:aa:aa:aa:aa:aa\n'):
            monkeypatch.setattr('sys.stdin', io.StringIO(line))
            netlog.main([])
        out = capsys.readouterr().out.splitlines()

        assert out[0] == out[2]
        assert out[0] != out[1]


@pytest.mark.usefixtures('tty')
class TestArguments:

    def test_no_file_prints_usage(self, home, capsys):
        assert netlog.main([]) == 1
        assert capsys.readouterr().err.startswith('Usage: netlog')

    @pytest.mark.parametrize('argv', [['-n', 'ten', 'x.log'], ['-n', '-3', 'x.log'],
                                      ['--bogus', 'x.log']])
    def test_bad_arguments_exit_1(self, home, argv):
        with pytest.raises(SystemExit) as info:
            netlog.main(argv)
        assert info.value.code == 1

    def test_unreadable_file(self, home):
        with pytest.raises(SystemExit) as info:
            netlog.main([str(home / 'nope.log')])
        assert 'cannot read' in str(info.value.code)

    def test_follow_missing_file(self, home):
        with pytest.raises(SystemExit) as info:
            netlog.main(['-f', str(home / 'nope.log')])
        assert 'not found' in str(info.value.code)


@pytest.mark.usefixtures('tty')
class TestModes:

    def test_interactive(self, home, monkeypatch):
        log = home / 'wifi.log'
        log.write_text('one\ntwo\r\n')
        seen = {}

        def fake_run(app):
            seen['lines'] = app.nav.store.texts()
            seen['name']  = app.name
        monkeypatch.setattr(netlog.ViewerApp, 'run', fake_run)

        assert netlog.main([str(log)]) == 0
        assert seen == {'lines': ['one', 'two'], 'name': 'wifi.log'}

    def test_follow_until_interrupted(self, home, monkeypatch, capsys):
        log = home / 'wifi.log'
        log.write_text('a\nb\nc\n')

        def interrupted(follower):
            follower.session.colors.color_for('CCCCCCCCCCCC')
            raise KeyboardInterrupt
        monkeypatch.setattr(netlog.TailFollower, 'run', interrupted)

        assert netlog.main(['-f', '-n', '1', str(log)]) == 0
        assert capsys.readouterr().out == 'c\n'
        assert (home / netlog.COLOR_FILE).exists()
