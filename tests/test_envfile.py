from pasarctl.core import envfile

from conftest import read_file, write_file


def test_parse_env_text_strips_quotes_and_nul():
    text = 'A="one"\nB = two \n# comment\nC=\'th ree\'\n\x00D=4\n'
    env = envfile.parse_env_text(text)
    assert env['A'] == 'one'
    assert env['B'] == 'two'
    assert env['C'] == 'th ree'
    assert env['D'] == '4'


def test_load_env_missing_file(tmp_path):
    assert envfile.load_env(str(tmp_path / "nope.env")) is None


def test_has_null_bytes(tmp_path):
    path = tmp_path / ".env"
    path.write_bytes(b"A=1\x00\n")
    assert envfile.has_null_bytes(str(path))


def test_replace_or_append(tmp_path):
    path = str(write_file(tmp_path / ".env", "UVICORN_PORT=8000\nOTHER=x\n"))
    envfile.replace_or_append("UVICORN_PORT", "9000", path=path)
    envfile.replace_or_append("NEW_KEY", "0 */6 * * *", quote=True, path=path)
    env = envfile.load_env(path)
    assert env['UVICORN_PORT'] == '9000'
    assert env['OTHER'] == 'x'
    assert env['NEW_KEY'] == '0 */6 * * *'
    assert read_file(path).count("UVICORN_PORT") == 1


def test_ensure_env_value_uncomments(tmp_path):
    path = str(write_file(tmp_path / ".env", "SERVICE_PORT= 62050\n# XRAY_EXECUTABLE_PATH=/usr/bin/xray\n"))
    ok, line = envfile.ensure_env_value("XRAY_EXECUTABLE_PATH", "/var/lib/pg-node/xray", path=path)
    assert ok
    assert line == "XRAY_EXECUTABLE_PATH= /var/lib/pg-node/xray"
    text = read_file(path)
    assert "# XRAY_EXECUTABLE_PATH" not in text
    assert text.count("XRAY_EXECUTABLE_PATH") == 1


def test_ensure_env_value_appends(tmp_path):
    path = str(write_file(tmp_path / ".env", "A=1\n"))
    envfile.ensure_env_value("XRAY_ASSETS_PATH", "/var/lib/pg-node", path=path)
    assert read_file(path).splitlines()[-1] == "XRAY_ASSETS_PATH= /var/lib/pg-node"


def test_ensure_env_value_missing_file(tmp_path):
    ok, msg = envfile.ensure_env_value("A", "1", path=str(tmp_path / "none"))
    assert not ok


def test_remove_keys_and_marker(tmp_path):
    path = str(write_file(tmp_path / ".env", "KEEP=1\n\n# Backup service configuration\n"
                                             "BACKUP_SERVICE_ENABLED=true\nBACKUP_TELEGRAM_CHAT_ID=5\n"))
    removed = envfile.remove_keys(("BACKUP_SERVICE_ENABLED", "BACKUP_TELEGRAM_CHAT_ID"),
                                  extra_lines=("# Backup service configuration",), path=path)
    assert removed == 3
    assert read_file(path) == "KEEP=1\n\n"


def test_append_block_and_has_line(tmp_path):
    path = str(write_file(tmp_path / ".env", "A=1\n"))
    envfile.append_block(["B=2", "C=3"], path=path)
    assert read_file(path) == "A=1\n\nB=2\nC=3\n"
    assert envfile.has_line(r'^C=3$', path=path)
    assert not envfile.has_line(r'^D=', path=path)


def test_sub_lines_counts(tmp_path):
    path = str(write_file(tmp_path / ".env", 'SQLALCHEMY_DATABASE_URL="sqlite..."\nX=1\n'))
    count = envfile.sub_lines(r'^(SQLALCHEMY_DATABASE_URL)', r'# \1', path=path)
    assert count == 1
    assert read_file(path).startswith('# SQLALCHEMY_DATABASE_URL')
