# Runs inside Blender:
#   blender -b <file.blend> -s <start> -e <end> -P mixdown_audio.py -- <output_dir> <file_name>
import os
import sys

import bpy

CONTAINERS = {
    "wav": ("WAV", "PCM"),
    "ogg": ("OGG", "VORBIS"),
    "ac3": ("AC3", "AC3"),
    "aac": ("AAC", "AAC"),
    "flac": ("FLAC", "FLAC"),
    "mp3": ("MP3", "MP3"),
    "mp2": ("MP2", "MP2"),
}


def main(argv):
    args = argv[argv.index("--") + 1:] if "--" in argv else []
    if len(args) < 2:
        print("usage: -- <output_dir> <file_name>", file=sys.stderr)
        return 2

    out_dir, file_name = args[0], args[1]
    ext = os.path.splitext(file_name)[1].lstrip(".").lower()
    if ext not in CONTAINERS:
        print("Warning: unknown audio extension '%s', writing AC3 audio" % ext, file=sys.stderr)
    container, codec = CONTAINERS.get(ext, ("AC3", "AC3"))

    os.makedirs(out_dir, exist_ok=True)
    target = os.path.join(out_dir, file_name)

    print("Mixdown: %s (%s/%s)" % (target, container, codec))
    result = bpy.ops.sound.mixdown(filepath=target, check_existing=False, container=container, codec=codec)
    if "FINISHED" not in result:
        print("Mixdown failed: %s" % (result,), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    code = main(sys.argv)
    if code:
        sys.exit(code)
