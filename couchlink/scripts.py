import shlex

from couchlink.config import DEFAULT_BUILD_LOG_PATH, DEFAULT_BUILD_SCRIPT_PATH
from couchlink.models import Agent
from couchlink.utils import shell_single_quote_escape

_BUILD_SETTINGS_READER = """import json, sys
data = json.load(sys.stdin)[0]["buildSettings"]
for key in ("TARGET_BUILD_DIR", "WRAPPER_NAME", "EXECUTABLE_NAME", "PRODUCT_BUNDLE_IDENTIFIER", "CODE_SIGN_IDENTITY"):
    print(data.get(key, ""))"""

_FIRST_SCHEME_READER = (
    "import json,sys; data=json.load(sys.stdin); "
    "target=data.get(sys.argv[1]) or {}; schemes=target.get('schemes') or []; "
    "print(schemes[0] if schemes else '')"
)

# Log patterns are bracketed so the terminal echo of this script does not match
# the build monitor signatures.
_BUILD_TEMPLATE = r"""cat > {script_path} << 'BUILDSCRIPT'
security unlock-keychain -p '{keychain_password}' ~/Library/Keychains/login.keychain-db 2>/dev/null || true
setopt nonomatch 2>/dev/null || set +f

LOG={log_path}
DEVICE='{device_udid}'
TEAM='{development_team}'

resolve_build_info() {{
    APP_INFO=$(/usr/bin/xcrun xcodebuild "$@" -configuration Debug -showBuildSettings -json 2>/dev/null | /usr/bin/python3 -c '{settings_reader}')
    IFS=$'\n' read -r -d '' TARGET_BUILD_DIR WRAPPER_NAME EXECUTABLE_NAME BUNDLE_ID CODE_SIGN_IDENTITY << EOF
$APP_INFO
EOF
    APP_PATH="$TARGET_BUILD_DIR/$WRAPPER_NAME"
}}

find_app_bundle() {{
    cd ~/Library/Developer/Xcode/DerivedData
    APP_PATH=$(find . -path "*$SCHEME-*/Build/Products/*-iphoneos/$WRAPPER_NAME" ! -path "*/Index.noindex/*" -print -quit 2>/dev/null)
    if [ -z "$APP_PATH" ] || [ ! -d "$APP_PATH" ]; then
        APP_PATH=$(find . -path "*$SCHEME-*/Build/Products/*-iphoneos/*.app" ! -path "*/Index.noindex/*" -type d -print -quit 2>/dev/null)
    fi
    if [ -n "$APP_PATH" ] && [ -d "$APP_PATH" ]; then
        APP_PATH=$(cd "$(dirname "$APP_PATH")" && pwd)/$(basename "$APP_PATH")
        return 0
    fi
    return 1
}}

install_and_launch() {{
    echo "Using app at: $APP_PATH"
    echo "[INSTALL] Installing app..."
    if /usr/bin/xcrun devicectl device install app --device "$DEVICE" "$APP_PATH" 2>&1; then
        echo "[LAUNCH] Launching app..."
        /usr/bin/xcrun devicectl device process launch --device "$DEVICE" "$BUNDLE_ID" 2>&1 || echo "Launch command completed"
    else
        echo "Install failed"
    fi
}}

show_log_errors() {{
    grep -E -A 5 -B 5 "CodeSign|codesign|error[:]" "$LOG" | tail -30 || tail -50 "$LOG"
}}

if ls -d *.xcworkspace 1>/dev/null 2>&1; then
    CONTAINER=$(ls -1d *.xcworkspace | head -1)
    KIND=workspace
elif ls -d *.xcodeproj 1>/dev/null 2>&1; then
    CONTAINER=$(ls -1d *.xcodeproj | head -1)
    KIND=project
else
    echo "No Xcode project found in current directory"
    exit 0
fi
echo "Found $KIND: $CONTAINER"

SCHEME=$(/usr/bin/xcrun xcodebuild -list -json -$KIND "$CONTAINER" 2>/dev/null | /usr/bin/python3 -c "{scheme_reader}" $KIND 2>/dev/null | /usr/bin/tr -d '\r' || true)
echo "Detected scheme: '$SCHEME'"
if [ -z "$SCHEME" ]; then
    echo "No schemes found. Listing all:"
    /usr/bin/xcrun xcodebuild -list -$KIND "$CONTAINER" 2>/dev/null
    exit 0
fi

resolve_build_info -$KIND "$CONTAINER" -scheme "$SCHEME"
echo "Building scheme: $SCHEME for device $DEVICE"
if /usr/bin/xcrun xcodebuild -$KIND "$CONTAINER" -scheme "$SCHEME" -configuration Debug -destination "platform=iOS,id=$DEVICE" -allowProvisioningUpdates CODE_SIGN_STYLE=Automatic DEVELOPMENT_TEAM="$TEAM" build 2>&1 | tee "$LOG"; then
    if grep -q "BUILD SUCC[E]EDED" "$LOG" 2>/dev/null; then
        echo "[SUCCESS] Build succeeded! Finding app bundle..."
        if find_app_bundle; then
            install_and_launch
        else
            echo "Could not find app bundle for $SCHEME"
        fi
    else
        echo "Build did not succeed. Showing log excerpt:"
        show_log_errors
    fi
else
    echo "Build did not succeed. Showing log excerpt:"
    show_log_errors
fi
BUILDSCRIPT
chmod +x {script_path}
{script_path}
"""


def build_install_script(
    device_udid: str,
    development_team: str,
    keychain_password: str,
    log_path: str = DEFAULT_BUILD_LOG_PATH,
    script_path: str = DEFAULT_BUILD_SCRIPT_PATH,
) -> str:
    return _BUILD_TEMPLATE.format(
        script_path=shlex.quote(script_path),
        keychain_password=shell_single_quote_escape(keychain_password),
        log_path=shlex.quote(log_path),
        device_udid=shell_single_quote_escape(device_udid),
        development_team=shell_single_quote_escape(development_team),
        settings_reader=_BUILD_SETTINGS_READER,
        scheme_reader=_FIRST_SCHEME_READER,
    )


def git_sync_script(one_liner: str) -> str:
    return one_liner.strip()


def agent_launch_command(agent: Agent) -> str:
    return agent.launch_command
