from __future__ import annotations
import logging
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

DEFAULT_LOCALE = "en"

# Feedback text keyed by "<exercise|area>.<checkpoint>.<good|low|high>".
MESSAGES: Dict[str, Dict[str, str]] = {
    "en": {
        "common.low_confidence": "Step back so your whole body is in view",
        "common.symmetry.good": "Both sides are moving evenly",
        "common.symmetry.low": "Your {side} {joint} is lagging, keep both sides even",
        "common.symmetry.high": "Both sides are moving evenly",
        "common.neck.good": "Neck is neutral",
        "common.neck.low": "Neck is neutral",
        "common.neck.high": "Keep your head in line with your spine",
        "common.pelvic_tilt.good": "Hips are level",
        "common.pelvic_tilt.low": "Hips are level",
        "common.pelvic_tilt.high": "Your {side} hip is dropping, keep your hips level",
        "common.pelvic_stability.good": "Pelvis is steady",
        "common.pelvic_stability.low": "Pelvis is shifting, brace your core",
        "common.pelvic_stability.high": "Pelvis is steady",
        "common.torso_rotation.good": "Shoulders are square to your hips",
        "common.torso_rotation.low": "Shoulders are square to your hips",
        "common.torso_rotation.high": "Your torso is twisting, square your shoulders to your hips",

        "squat.knee_angle.good": "Good depth",
        "squat.knee_angle.low": "Too deep, stop just below parallel",
        "squat.knee_angle.high": "Go lower, aim for thighs parallel to the floor",
        "squat.hip_angle.good": "Good hip position",
        "squat.hip_angle.low": "Hips are folding too far, lift your chest",
        "squat.hip_angle.high": "Sit your hips back more",
        "squat.ankle_angle.good": "Good ankle mobility",
        "squat.ankle_angle.low": "Let your knees travel forward a little",
        "squat.ankle_angle.high": "Knees are drifting far forward, sit back",
        "squat.heel_rise": "Keep your heels on the floor",
        "squat.torso_inclination.good": "Chest is up",
        "squat.torso_inclination.low": "Chest is up",
        "squat.torso_inclination.high": "You are leaning forward too much, lift your chest",
        "squat.knee_valgus.good": "Knees track over your toes",
        "squat.knee_valgus.low": "Knees track over your toes",
        "squat.knee_valgus.high": "Knees are caving in, push them out",

        "deadlift.hip_hinge.good": "Good hip hinge",
        "deadlift.hip_hinge.low": "Hips are too low, this is turning into a squat",
        "deadlift.hip_hinge.high": "Push your hips back further",
        "deadlift.knee_angle.good": "Good knee bend",
        "deadlift.knee_angle.low": "Too much knee bend, raise your hips",
        "deadlift.knee_angle.high": "Soften your knees slightly",
        "deadlift.spine_alignment.good": "Strong lockout",
        "deadlift.spine_alignment.low": "Strong lockout",
        "deadlift.spine_alignment.high": "Stand all the way up at the top",
        "deadlift.bar_path.good": "Bar stays over mid-foot",
        "deadlift.bar_path.low": "Bar stays over mid-foot",
        "deadlift.bar_path.high": "Keep the bar close to your legs",
        "deadlift.hip_dominance.good": "Hips and knees are working together",
        "deadlift.hip_dominance.low": "Drive with your hips, not just your legs",
        "deadlift.hip_dominance.high": "Use your legs more off the floor",

        "lunge.front_knee_angle.good": "Good front knee depth",
        "lunge.front_knee_angle.low": "Front knee is bent too far",
        "lunge.front_knee_angle.high": "Lower until your front knee reaches 90 degrees",
        "lunge.back_knee_angle.good": "Good back knee position",
        "lunge.back_knee_angle.low": "Back knee is bent too far",
        "lunge.back_knee_angle.high": "Drop your back knee toward the floor",
        "lunge.hip_angle.good": "Good hip position",
        "lunge.hip_angle.low": "Hips are folding, stay tall",
        "lunge.hip_angle.high": "Sink your hips a little lower",
        "lunge.hip_flexor.good": "Good hip extension on the back leg",
        "lunge.hip_flexor.low": "Open the front of your back hip",
        "lunge.hip_flexor.high": "Good hip extension on the back leg",
        "lunge.hip_flexor.pelvic_tilt": "Pelvis is tilting, stretch your hip flexors and square your hips",
        "lunge.knee_over_toe.good": "Front knee is stacked over your foot",
        "lunge.knee_over_toe.low": "Shift your weight forward slightly",
        "lunge.knee_over_toe.high": "Front knee is past your toes, take a longer step",
        "lunge.torso_inclination.good": "Torso is upright",
        "lunge.torso_inclination.low": "Torso is upright",
        "lunge.torso_inclination.high": "Keep your torso upright",

        "pushup.elbow_angle.good": "Good elbow bend",
        "pushup.elbow_angle.low": "You are going very deep, control the bottom",
        "pushup.elbow_angle.high": "Bend your elbows more",
        "pushup.depth.good": "Full range of motion",
        "pushup.depth.low": "Lower your chest closer to the floor",
        "pushup.depth.high": "Full range of motion",
        "pushup.elbow_flare.good": "Elbows are stacked over your wrists",
        "pushup.elbow_flare.low": "Elbows are stacked over your wrists",
        "pushup.elbow_flare.high": "Tuck your elbows in",
        "pushup.body_alignment.good": "Body is in a straight line",
        "pushup.body_alignment.low": "Body is in a straight line",
        "pushup.body_alignment.high": "Keep your body in a straight line",
        "pushup.hip_sag.good": "Hips are level",
        "pushup.hip_sag.low": "Hips are level",
        "pushup.hip_sag.high": "Hips are sagging, brace your core",
        "pushup.hip_pike.good": "Hips are level",
        "pushup.hip_pike.low": "Hips are level",
        "pushup.hip_pike.high": "Hips are too high, lower them",

        "plank.body_alignment.good": "Body is in a straight line",
        "plank.body_alignment.low": "Body is in a straight line",
        "plank.body_alignment.high": "Straighten your body from head to heels",
        "plank.hip_position.good": "Hips are level",
        "plank.hip_position.low": "Hips are too high, lower them",
        "plank.hip_position.high": "Hips are sagging, squeeze your glutes",
        "plank.shoulder_alignment.good": "Shoulders are over your elbows",
        "plank.shoulder_alignment.low": "Shoulders are over your elbows",
        "plank.shoulder_alignment.high": "Move your shoulders over your elbows",

        "tempo.good": "Nice controlled tempo ({ratio}:1)",
        "tempo.eccentric_too_fast": "Slow down on the way down",
        "tempo.eccentric_short": "Take a little more time lowering",
        "tempo.eccentric_long": "Good control, you can drive up a bit faster",
        "tempo.concentric_too_slow": "Drive up with more intent",

        "velocity.too_slow": "Movement is very slow",
        "velocity.slow": "A bit slow",
        "velocity.optimal": "Good speed",
        "velocity.fast": "A bit fast, stay in control",
        "velocity.too_fast": "Too fast, slow down",

        "rom.normal": "{joint} range of motion is normal",
        "rom.limited": "{joint} range of motion is limited ({percent}% of normal)",
        "rom.hypermobile": "{joint} range of motion is beyond normal, keep it controlled",
        "rom.recommend.stretch": "Add mobility work for your {joint}",
        "rom.recommend.strengthen": "Strengthen the muscles around your {joint} for stability",
        "rom.recommend.maintain": "Keep up your current {joint} mobility",

        "prediction.approaching_limit": "Watch your {joint}, it is heading out of range",
        "prediction.error_imminent": "Stop and reset your {joint} position",

        "movement.rushed": "You are rushing, control the movement",
        "movement.controlled": "Controlled movement",
    },
    "ko": {
        "common.low_confidence": "전신이 화면에 보이도록 뒤로 물러나세요",
        "common.symmetry.good": "양쪽이 균형 있게 움직이고 있어요",
        "common.symmetry.low": "{side} {joint}이(가) 늦어요. 양쪽을 균형 있게 유지하세요",
        "common.symmetry.high": "양쪽이 균형 있게 움직이고 있어요",
        "common.neck.good": "목이 중립 자세예요",
        "common.neck.low": "목이 중립 자세예요",
        "common.neck.high": "머리를 척추와 일직선으로 유지하세요",
        "common.pelvic_tilt.good": "골반이 수평이에요",
        "common.pelvic_tilt.low": "골반이 수평이에요",
        "common.pelvic_tilt.high": "{side} 골반이 내려가요. 골반을 수평으로 유지하세요",
        "common.pelvic_stability.good": "골반이 안정적이에요",
        "common.pelvic_stability.low": "골반이 흔들려요. 코어에 힘을 주세요",
        "common.pelvic_stability.high": "골반이 안정적이에요",
        "common.torso_rotation.good": "어깨가 골반과 나란해요",
        "common.torso_rotation.low": "어깨가 골반과 나란해요",
        "common.torso_rotation.high": "상체가 비틀려요. 어깨를 골반과 나란히 하세요",

        "squat.knee_angle.good": "좋은 깊이예요",
        "squat.knee_angle.low": "너무 깊어요. 평행보다 조금 아래에서 멈추세요",
        "squat.knee_angle.high": "더 내려가세요. 허벅지가 바닥과 평행하게",
        "squat.hip_angle.good": "엉덩이 위치가 좋아요",
        "squat.hip_angle.low": "상체가 너무 숙여졌어요. 가슴을 드세요",
        "squat.hip_angle.high": "엉덩이를 더 뒤로 빼세요",
        "squat.ankle_angle.good": "발목 가동성이 좋아요",
        "squat.ankle_angle.low": "무릎이 조금 더 앞으로 나가도 괜찮아요",
        "squat.ankle_angle.high": "무릎이 너무 앞으로 나갔어요. 뒤로 앉으세요",
        "squat.heel_rise": "뒤꿈치를 바닥에 붙이세요",
        "squat.torso_inclination.good": "가슴이 잘 펴져 있어요",
        "squat.torso_inclination.low": "가슴이 잘 펴져 있어요",
        "squat.torso_inclination.high": "상체가 너무 앞으로 기울었어요. 가슴을 드세요",
        "squat.knee_valgus.good": "무릎이 발끝 방향을 잘 따라가요",
        "squat.knee_valgus.low": "무릎이 발끝 방향을 잘 따라가요",
        "squat.knee_valgus.high": "무릎이 안으로 모여요. 바깥으로 밀어주세요",

        "deadlift.hip_hinge.good": "힙 힌지가 좋아요",
        "deadlift.hip_hinge.low": "엉덩이가 너무 낮아요. 스쿼트처럼 되고 있어요",
        "deadlift.hip_hinge.high": "엉덩이를 더 뒤로 빼세요",
        "deadlift.knee_angle.good": "무릎 굽힘이 좋아요",
        "deadlift.knee_angle.low": "무릎이 너무 굽혀졌어요. 엉덩이를 높이세요",
        "deadlift.knee_angle.high": "무릎을 살짝 굽히세요",
        "deadlift.spine_alignment.good": "락아웃이 좋아요",
        "deadlift.spine_alignment.low": "락아웃이 좋아요",
        "deadlift.spine_alignment.high": "끝에서 완전히 일어서세요",
        "deadlift.bar_path.good": "바가 발 중앙 위에 있어요",
        "deadlift.bar_path.low": "바가 발 중앙 위에 있어요",
        "deadlift.bar_path.high": "바를 다리에 가깝게 유지하세요",
        "deadlift.hip_dominance.good": "엉덩이와 무릎이 함께 잘 움직여요",
        "deadlift.hip_dominance.low": "다리만 쓰지 말고 엉덩이로 밀어주세요",
        "deadlift.hip_dominance.high": "바닥에서 들 때 다리를 더 쓰세요",

        "lunge.front_knee_angle.good": "앞 무릎 깊이가 좋아요",
        "lunge.front_knee_angle.low": "앞 무릎이 너무 굽혀졌어요",
        "lunge.front_knee_angle.high": "앞 무릎이 90도가 될 때까지 내려가세요",
        "lunge.back_knee_angle.good": "뒷 무릎 위치가 좋아요",
        "lunge.back_knee_angle.low": "뒷 무릎이 너무 굽혀졌어요",
        "lunge.back_knee_angle.high": "뒷 무릎을 바닥 쪽으로 내리세요",
        "lunge.hip_angle.good": "엉덩이 위치가 좋아요",
        "lunge.hip_angle.low": "상체가 접혀요. 곧게 서세요",
        "lunge.hip_angle.high": "엉덩이를 조금 더 내리세요",
        "lunge.hip_flexor.good": "뒷다리 고관절이 잘 펴져 있어요",
        "lunge.hip_flexor.low": "뒷다리 고관절 앞쪽을 펴세요",
        "lunge.hip_flexor.high": "뒷다리 고관절이 잘 펴져 있어요",
        "lunge.hip_flexor.pelvic_tilt": "골반이 기울었어요. 고관절 스트레칭을 하고 골반을 바르게 하세요",
        "lunge.knee_over_toe.good": "앞 무릎이 발 위에 있어요",
        "lunge.knee_over_toe.low": "체중을 조금 앞으로 옮기세요",
        "lunge.knee_over_toe.high": "앞 무릎이 발끝을 넘었어요. 보폭을 넓히세요",
        "lunge.torso_inclination.good": "상체가 곧게 서 있어요",
        "lunge.torso_inclination.low": "상체가 곧게 서 있어요",
        "lunge.torso_inclination.high": "상체를 곧게 세우세요",

        "pushup.elbow_angle.good": "팔꿈치 굽힘이 좋아요",
        "pushup.elbow_angle.low": "너무 깊어요. 바닥에서 조절하세요",
        "pushup.elbow_angle.high": "팔꿈치를 더 굽히세요",
        "pushup.depth.good": "가동 범위가 충분해요",
        "pushup.depth.low": "가슴을 바닥에 더 가깝게 내리세요",
        "pushup.depth.high": "가동 범위가 충분해요",
        "pushup.elbow_flare.good": "팔꿈치가 손목 위에 있어요",
        "pushup.elbow_flare.low": "팔꿈치가 손목 위에 있어요",
        "pushup.elbow_flare.high": "팔꿈치를 몸 쪽으로 모으세요",
        "pushup.body_alignment.good": "몸이 일직선이에요",
        "pushup.body_alignment.low": "몸이 일직선이에요",
        "pushup.body_alignment.high": "몸을 일직선으로 유지하세요",
        "pushup.hip_sag.good": "엉덩이 높이가 좋아요",
        "pushup.hip_sag.low": "엉덩이 높이가 좋아요",
        "pushup.hip_sag.high": "엉덩이가 처졌어요. 코어에 힘을 주세요",
        "pushup.hip_pike.good": "엉덩이 높이가 좋아요",
        "pushup.hip_pike.low": "엉덩이 높이가 좋아요",
        "pushup.hip_pike.high": "엉덩이가 너무 높아요. 내리세요",

        "plank.body_alignment.good": "몸이 일직선이에요",
        "plank.body_alignment.low": "몸이 일직선이에요",
        "plank.body_alignment.high": "머리부터 발끝까지 일직선으로 펴세요",
        "plank.hip_position.good": "엉덩이 높이가 좋아요",
        "plank.hip_position.low": "엉덩이가 너무 높아요. 내리세요",
        "plank.hip_position.high": "엉덩이가 처졌어요. 둔근에 힘을 주세요",
        "plank.shoulder_alignment.good": "어깨가 팔꿈치 위에 있어요",
        "plank.shoulder_alignment.low": "어깨가 팔꿈치 위에 있어요",
        "plank.shoulder_alignment.high": "어깨를 팔꿈치 위로 옮기세요",

        "tempo.good": "템포 조절이 좋아요 ({ratio}:1)",
        "tempo.eccentric_too_fast": "내려갈 때 천천히 하세요",
        "tempo.eccentric_short": "내려가는 시간을 조금 더 가지세요",
        "tempo.eccentric_long": "조절이 좋아요. 올라올 때 조금 더 빠르게 해도 돼요",
        "tempo.concentric_too_slow": "올라올 때 더 힘있게 밀어주세요",

        "velocity.too_slow": "동작이 매우 느려요",
        "velocity.slow": "조금 느려요",
        "velocity.optimal": "속도가 좋아요",
        "velocity.fast": "조금 빨라요. 조절하세요",
        "velocity.too_fast": "너무 빨라요. 천천히 하세요",

        "rom.normal": "{joint} 가동 범위가 정상이에요",
        "rom.limited": "{joint} 가동 범위가 제한적이에요 (정상의 {percent}%)",
        "rom.hypermobile": "{joint} 가동 범위가 정상보다 커요. 조절하며 움직이세요",
        "rom.recommend.stretch": "{joint} 가동성 운동을 추가하세요",
        "rom.recommend.strengthen": "{joint} 주변 근육을 강화해 안정성을 높이세요",
        "rom.recommend.maintain": "지금의 {joint} 가동성을 유지하세요",

        "prediction.approaching_limit": "{joint}이(가) 범위를 벗어나려 해요. 주의하세요",
        "prediction.error_imminent": "멈추고 {joint} 자세를 다시 잡으세요",

        "movement.rushed": "너무 서두르고 있어요. 동작을 조절하세요",
        "movement.controlled": "조절된 움직임이에요",
    },
}

# Localized values for the common `joint` / `side` params.
PARAM_NAMES: Dict[str, Dict[str, str]] = {
    "en": {},
    "ko": {
        "knee": "무릎",
        "hip": "엉덩이",
        "elbow": "팔꿈치",
        "ankle": "발목",
        "torso": "상체",
        "shoulder": "어깨",
        "left": "왼쪽",
        "right": "오른쪽",
    },
}


def available_locales() -> list:
    return sorted(MESSAGES)


def render(key: str, params: Optional[Mapping[str, Any]] = None, locale: str = DEFAULT_LOCALE) -> str:
    """
    Localized text for a message key. Falls back to English, then to the key
    itself, so an untranslated key still renders something readable.
    """
    table = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    template = table.get(key) or MESSAGES[DEFAULT_LOCALE].get(key)
    if template is None:
        logger.debug("no message for key %s (%s)", key, locale)
        return key
    if not params:
        return template
    names = PARAM_NAMES.get(locale, {})
    values = {k: names.get(v, v) if isinstance(v, str) else v for k, v in params.items()}
    try:
        return template.format(**values)
    except (KeyError, IndexError):
        logger.warning("message %s is missing params, got %s", key, sorted(values))
        return template
